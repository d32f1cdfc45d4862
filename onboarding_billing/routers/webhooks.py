from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from onboarding_billing.core.api_docs import error_responses
from onboarding_billing.core.deps import get_db, get_webhook_gateway, require_admin_key
from onboarding_billing.models.webhook_event import LEDGER_STATUSES
from onboarding_billing.schemas.common import PaginationMeta
from onboarding_billing.schemas.webhook import WebhookAckOut, WebhookLedgerEntryOut, WebhookLedgerListOut
from onboarding_billing.services import webhook_ledger
from onboarding_billing.services.webhook_gateway import BYPASS_HEADER, SIGNATURE_HEADER, WebhookGateway

router = APIRouter(tags=["webhooks"])
ledger_router = APIRouter(
    prefix="/payment-webhook-events",
    tags=["webhooks"],
    dependencies=[Depends(require_admin_key)],
)


@router.post(
    "/webhook",
    response_model=WebhookAckOut,
    response_model_exclude_none=True,
    summary="Receive a payment provider event",
    responses=error_responses(400, 500),
)
async def receive_provider_webhook(
    request: Request,
    gateway: WebhookGateway = Depends(get_webhook_gateway),
):
    # The signature covers the exact bytes, so the body is never parsed before verification.
    raw_body = await request.body()
    ack = await run_in_threadpool(
        gateway.handle_inbound_event,
        raw_body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(BYPASS_HEADER),
    )
    return WebhookAckOut(received=ack.received, duplicate=True if ack.duplicate else None)


@ledger_router.get(
    "",
    response_model=WebhookLedgerListOut,
    summary="List processed provider events",
    responses=error_responses(400, 401, 403, 500),
)
def list_webhook_events(
    status: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    normalized_status = status.strip().lower() if status and status.strip() else None
    if normalized_status and normalized_status not in LEDGER_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of: {', '.join(LEDGER_STATUSES)}")
    normalized_type = event_type.strip() if event_type and event_type.strip() else None

    total, rows = webhook_ledger.list_events(
        db,
        status=normalized_status,
        event_type=normalized_type,
        limit=limit,
        offset=offset,
    )
    count = len(rows)
    return WebhookLedgerListOut(
        items=[WebhookLedgerEntryOut.model_validate(row) for row in rows],
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        status=normalized_status,
        event_type=normalized_type,
    )


@ledger_router.get(
    "/{event_id}",
    response_model=WebhookLedgerEntryOut,
    summary="Get one provider event from the ledger",
    responses=error_responses(401, 403, 404, 500),
)
def get_webhook_event(event_id: str, db: Session = Depends(get_db)):
    row = webhook_ledger.get_event(db, event_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return WebhookLedgerEntryOut.model_validate(row)
