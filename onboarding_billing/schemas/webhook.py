from datetime import datetime

from pydantic import BaseModel, ConfigDict

from onboarding_billing.schemas.common import PaginationMeta


class WebhookAckOut(BaseModel):
    received: bool = True
    duplicate: bool | None = None

    model_config = ConfigDict(json_schema_extra={"example": {"received": True}})


class WebhookLedgerEntryOut(BaseModel):
    event_id: str
    event_type: str
    status: str
    livemode: bool
    received_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None

    model_config = ConfigDict(from_attributes=True)


class WebhookLedgerListOut(BaseModel):
    items: list[WebhookLedgerEntryOut]
    pagination: PaginationMeta
    status: str | None = None
    event_type: str | None = None
