from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from saas_control.api.deps import require_perm
from saas_control.domain.errors import NotFoundError, SignatureError, ValidationError
from saas_control.domain.models import BillingEventRead, BillingIngestRead
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM
from saas_control.services.billing_event_service import BillingEventService

router = APIRouter()


def get_billing_event_service() -> BillingEventService:
    return BillingEventService()


Service = Annotated[BillingEventService, Depends(get_billing_event_service)]

BillingErrors = (NotFoundError, SignatureError, ValidationError)


def _handle_billing_error(exc: Exception) -> None:
    if isinstance(exc, SignatureError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.post("/webhooks", response_model=BillingIngestRead)
async def receive_webhook(
    request: Request,
    service: Service,
    x_billing_signature: Annotated[str | None, Header()] = None,
) -> BillingIngestRead:
    raw_body = await request.body()
    try:
        return await run_in_threadpool(service.ingest_signed, raw_body, x_billing_signature)
    except BillingErrors as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/events/review-queue",
    response_model=list[BillingEventRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))],
)
def list_review_queue(service: Service) -> list[BillingEventRead]:
    return [BillingEventRead.model_validate(item) for item in service.list_review_queue()]


@router.get(
    "/events/{event_id}",
    response_model=BillingEventRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))],
)
def get_billing_event(event_id: str, service: Service) -> BillingEventRead:
    try:
        return BillingEventRead.model_validate(service.get_event(event_id))
    except BillingErrors as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/events/{event_id}/requeue",
    response_model=BillingIngestRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))],
)
def requeue_billing_event(event_id: str, service: Service) -> BillingIngestRead:
    try:
        return service.requeue(event_id)
    except BillingErrors as exc:
        _handle_billing_error(exc)
        raise
