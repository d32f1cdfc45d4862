from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding_billing.models.webhook_event import PaymentWebhookEvent

ERROR_MESSAGE_MAX_LENGTH = 2000


def record_event(db: Session, *, event_id: str, event_type: str, livemode: bool = False) -> bool:
    """Inserts the ledger row for an event in ``processing``.

    Returns False when the event id is already on the ledger. The primary key
    decides, so two deliveries racing each other cannot both return True.
    """
    db.add(
        PaymentWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            status="processing",
            livemode=livemode,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if get_event(db, event_id) is None:
            raise
        return False
    return True


def get_event(db: Session, event_id: str) -> PaymentWebhookEvent | None:
    return db.execute(
        select(PaymentWebhookEvent).where(PaymentWebhookEvent.event_id == event_id)
    ).scalar_one_or_none()


def mark_completed(db: Session, event_id: str) -> None:
    db.execute(
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.event_id == event_id)
        .values(status="completed", completed_at=datetime.now(timezone.utc), error_message=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_failed(db: Session, event_id: str, error_message: str) -> None:
    db.execute(
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.event_id == event_id)
        .values(
            status="failed",
            completed_at=datetime.now(timezone.utc),
            error_message=error_message[:ERROR_MESSAGE_MAX_LENGTH],
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def list_events(
    db: Session,
    *,
    status: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[PaymentWebhookEvent]]:
    count_stmt = select(func.count(PaymentWebhookEvent.event_id))
    data_stmt = select(PaymentWebhookEvent)
    if status:
        count_stmt = count_stmt.where(PaymentWebhookEvent.status == status)
        data_stmt = data_stmt.where(PaymentWebhookEvent.status == status)
    if event_type:
        count_stmt = count_stmt.where(PaymentWebhookEvent.event_type == event_type)
        data_stmt = data_stmt.where(PaymentWebhookEvent.event_type == event_type)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(PaymentWebhookEvent.received_at.desc(), PaymentWebhookEvent.event_id)
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return total, list(rows)
