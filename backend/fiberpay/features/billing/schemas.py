from datetime import datetime

from pydantic import BaseModel


class StartBillingRequest(BaseModel):
    recipient_pubkey: str | None = None
    rate_per_second_ckb: str | None = None
    interval_ms: int | None = None
    min_payment_shannon: int | None = None


class PaymentTickResponse(BaseModel):
    sequence: int
    timestamp: datetime
    amount_shannon: int
    total_paid_shannon: int
    status: str
    payment_hash: str | None
    error: str | None


class BillingStatusResponse(BaseModel):
    is_streaming: bool
    recipient_pubkey: str | None
    rate_per_second_ckb: str | None
    total_paid_shannon: int
    total_paid_ckb: str
    pending_amount_shannon: int
    last_tick: PaymentTickResponse | None
