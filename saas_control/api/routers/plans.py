from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from saas_control.api.deps import CurrentContext, require_perm
from saas_control.domain.errors import ConflictError, NotFoundError, ValidationError
from saas_control.domain.models import FeatureAccessRead, PlanRead, PlanUpsert, TenantFeaturesRead
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM, PERM_PLAN_READ
from saas_control.services.plan_catalog_service import PlanCatalogService, to_plan_read

router = APIRouter()


def get_plan_catalog_service() -> PlanCatalogService:
    return PlanCatalogService()


Service = Annotated[PlanCatalogService, Depends(get_plan_catalog_service)]


def _handle_plan_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.get("", response_model=list[PlanRead])
def list_plans(service: Service) -> list[PlanRead]:
    return service.list_plans()


@router.get("/{slug}", response_model=PlanRead)
def get_plan(slug: str, service: Service) -> PlanRead:
    try:
        return to_plan_read(service.get_plan(slug))
    except (NotFoundError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise


@router.put(
    "/{slug}",
    response_model=PlanRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))],
)
def upsert_plan(slug: str, payload: PlanUpsert, ctx: CurrentContext, service: Service) -> PlanRead:
    if payload.slug != slug:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="slug mismatch")
    try:
        return to_plan_read(service.upsert_plan(ctx, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_plan_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/features",
    response_model=TenantFeaturesRead,
    dependencies=[Depends(require_perm(PERM_PLAN_READ))],
)
def get_tenant_features(tenant_id: str, ctx: CurrentContext, service: Service) -> TenantFeaturesRead:
    try:
        plan_slug, features = service.get_features_for_tenant(ctx, tenant_id)
    except (NotFoundError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise
    return TenantFeaturesRead(tenant_id=tenant_id, plan_slug=plan_slug, features=features)


@router.get(
    "/tenants/{tenant_id}/features/{feature}",
    response_model=FeatureAccessRead,
    dependencies=[Depends(require_perm(PERM_PLAN_READ))],
)
def can_access_feature(tenant_id: str, feature: str, ctx: CurrentContext, service: Service) -> FeatureAccessRead:
    try:
        allowed = service.can_access_feature(ctx, tenant_id, feature)
    except (NotFoundError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise
    return FeatureAccessRead(tenant_id=tenant_id, feature=feature, allowed=allowed)
