from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CheckoutIn(BaseModel):
    submission_id: UUID = Field(validation_alias=AliasChoices("submissionId", "submission_id"))
    session_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    additional_languages: list[str] = Field(
        default_factory=list,
        max_length=40,
        validation_alias=AliasChoices("additionalLanguages", "additional_languages"),
    )
    discount_code: Optional[str] = Field(
        default=None,
        max_length=80,
        validation_alias=AliasChoices("discountCode", "discount_code"),
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "submissionId": "4b0b7a9e-1f2c-4a53-9f64-9fd2a1a0c111",
                "sessionId": "2f0c3f55-3f8b-4d15-8a9e-0d8a8c2d9f01",
                "additionalLanguages": ["de", "fr"],
                "discountCode": "WELCOME10",
            }
        }
    )


class CheckoutTokenIn(BaseModel):
    submission_id: UUID = Field(validation_alias=AliasChoices("submissionId", "submission_id"))
    session_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))


class CamelOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutTokenOut(CamelOut):
    token: str
    expires_at: datetime


class StripeIdsOut(CamelOut):
    customer_id: str | None = None
    subscription_id: str | None = None
    subscription_schedule_id: str | None = None
    payment_id: str | None = None
    invoice_id: str | None = None


class PricingLineItemOut(CamelOut):
    id: str
    description: str
    amount: int
    original_amount: int
    quantity: int
    discount_amount: int
    is_recurring: bool


class PricingSummaryOut(CamelOut):
    base_amount: int
    addon_amounts: dict[str, int]
    subtotal: int
    discount_amount: int
    total: int
    recurring_amount: int
    recurring_discount: int
    currency: str
    discount_code: str | None = None
    line_items: list[PricingLineItemOut]


class TaxOut(CamelOut):
    amount: int
    currency: str


class CheckoutDataOut(CamelOut):
    payment_required: bool
    client_secret: str | None = None
    submission_id: str
    stripe_ids: StripeIdsOut
    summary: PricingSummaryOut
    tax: TaxOut | None = None
    reused: bool = False


class CheckoutOut(BaseModel):
    success: bool = True
    data: CheckoutDataOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "data": {
                    "paymentRequired": True,
                    "clientSecret": "pi_123_secret_456",
                    "submissionId": "4b0b7a9e-1f2c-4a53-9f64-9fd2a1a0c111",
                    "stripeIds": {
                        "customerId": "cus_123",
                        "subscriptionId": "sub_123",
                        "subscriptionScheduleId": "sub_sched_123",
                        "paymentId": "pi_123",
                        "invoiceId": "in_123",
                    },
                    "summary": {
                        "baseAmount": 3500,
                        "addonAmounts": {"de": 7500},
                        "subtotal": 11000,
                        "discountAmount": 0,
                        "total": 11000,
                        "recurringAmount": 3500,
                        "recurringDiscount": 0,
                        "currency": "eur",
                        "discountCode": None,
                        "lineItems": [],
                    },
                    "tax": None,
                    "reused": False,
                },
            }
        }
    )


class PaymentStatusOut(CamelOut):
    submission_id: str
    status: str
    paid: bool
    payment_completed_at: datetime | None = None
    payment_status: str | None = None
    subscription_status: str | None = None
