from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from saas_control.api.deps import CurrentContext, require_any_perm, require_perm
from saas_control.domain.errors import AuthError, ConflictError, NotFoundError, ValidationError
from saas_control.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    SystemLoginRequest,
    TenantCreate,
    TenantExportRead,
    TenantRead,
    TenantUpdate,
    TokenResponse,
    UserRead,
)
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM, PERM_IDENTITY_READ, PERM_IDENTITY_WRITE
from saas_control.infra.auth import SYSTEM_TENANT_ID, create_access_token
from saas_control.services.tenant_directory_service import TenantDirectoryService

router = APIRouter()


def get_tenant_directory_service() -> TenantDirectoryService:
    return TenantDirectoryService()


Service = Annotated[TenantDirectoryService, Depends(get_tenant_directory_service)]

IdentityErrors = (AuthError, ConflictError, NotFoundError, ValidationError)


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, service: Service) -> TenantRead:
    try:
        tenant = service.create_tenant(payload)
        return TenantRead.model_validate(tenant)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/tenants",
    response_model=list[TenantRead],
    dependencies=[Depends(require_any_perm(PERM_IDENTITY_READ, PERM_ADMIN_SYSTEM))],
)
def list_tenants(ctx: CurrentContext, service: Service) -> list[TenantRead]:
    tenants = service.list_tenants(ctx)
    return [TenantRead.model_validate(item) for item in tenants]


@router.get(
    "/tenants/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_any_perm(PERM_IDENTITY_READ, PERM_ADMIN_SYSTEM))],
)
def get_tenant(tenant_id: str, ctx: CurrentContext, service: Service) -> TenantRead:
    try:
        tenant = service.get_tenant(ctx, tenant_id)
        return TenantRead.model_validate(tenant)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/tenants/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def update_tenant(tenant_id: str, payload: TenantUpdate, ctx: CurrentContext, service: Service) -> TenantRead:
    try:
        tenant = service.update_profile(ctx, tenant_id, payload)
        return TenantRead.model_validate(tenant)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/suspend",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))],
)
def suspend_tenant(tenant_id: str, ctx: CurrentContext, service: Service) -> TenantRead:
    try:
        tenant = service.suspend_tenant(ctx, tenant_id)
        return TenantRead.model_validate(tenant)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/anonymize",
    response_model=TenantRead,
    dependencies=[Depends(require_any_perm(PERM_IDENTITY_WRITE, PERM_ADMIN_SYSTEM))],
)
def anonymize_tenant(tenant_id: str, ctx: CurrentContext, service: Service) -> TenantRead:
    try:
        tenant = service.anonymize_tenant(ctx, tenant_id)
        return TenantRead.model_validate(tenant)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/export",
    response_model=TenantExportRead,
    dependencies=[Depends(require_any_perm(PERM_IDENTITY_READ, PERM_ADMIN_SYSTEM))],
)
def export_tenant(tenant_id: str, ctx: CurrentContext, service: Service) -> TenantExportRead:
    try:
        return service.export_tenant_data(ctx, tenant_id)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, permissions = service.dev_login(payload.tenant_id, payload.username, payload.password)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        tenant_id=user.tenant_id,
        permissions=permissions,
    )
    return TokenResponse(access_token=token, permissions=permissions)


@router.post("/system-login", response_model=TokenResponse)
def system_login(payload: SystemLoginRequest, service: Service) -> TokenResponse:
    try:
        permissions = service.system_login(payload.operator, payload.api_key)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(
        user_id=f"operator:{payload.operator}",
        tenant_id=SYSTEM_TENANT_ID,
        permissions=permissions,
        system=True,
    )
    return TokenResponse(access_token=token, permissions=permissions)


@router.get(
    "/tenants/{tenant_id}/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def list_users(tenant_id: str, ctx: CurrentContext, service: Service) -> list[UserRead]:
    try:
        users = service.list_users(ctx, tenant_id)
    except IdentityErrors as exc:
        _handle_identity_error(exc)
        raise
    return [UserRead.model_validate(item) for item in users]
