from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from fiberpay.features.billing.engine import BillingEngine, InvalidConfig, NoRouteAvailable, PaymentTick
from fiberpay.features.billing.schemas import (
    BillingStatusResponse,
    PaymentTickResponse,
    StartBillingRequest,
)
from fiberpay.features.channels.controller import ChannelStatus
from fiberpay.platform.services.ckb import format_shannon
from fiberpay.platform.session import FiberSession, get_fiber_session

router = APIRouter(prefix="/billing")


def _tick_response(tick: PaymentTick) -> PaymentTickResponse:
    return PaymentTickResponse(
        sequence=tick.sequence,
        timestamp=tick.timestamp,
        amount_shannon=tick.amount_shannon,
        total_paid_shannon=tick.total_paid_shannon,
        status=tick.status.value,
        payment_hash=tick.payment_hash,
        error=tick.error,
    )


def _status_response(engine: BillingEngine | None) -> BillingStatusResponse:
    if engine is None:
        return BillingStatusResponse(
            is_streaming=False,
            recipient_pubkey=None,
            rate_per_second_ckb=None,
            total_paid_shannon=0,
            total_paid_ckb=format_shannon(0),
            pending_amount_shannon=0,
            last_tick=None,
        )

    history = engine.history()
    return BillingStatusResponse(
        is_streaming=engine.is_active(),
        recipient_pubkey=engine.config.recipient_pubkey,
        rate_per_second_ckb=str(engine.config.rate_per_second),
        total_paid_shannon=engine.get_total_paid(),
        total_paid_ckb=engine.get_total_paid_formatted(),
        pending_amount_shannon=engine.pending_amount,
        last_tick=_tick_response(history[-1]) if history else None,
    )


@router.post("/start", response_model=BillingStatusResponse)
async def start_billing(
    body: StartBillingRequest,
    session: FiberSession = Depends(get_fiber_session),
) -> BillingStatusResponse:
    if session.billing is not None and session.billing.is_active():
        return _status_response(session.billing)

    if session.channels.snapshot().status != ChannelStatus.READY:
        raise HTTPException(status_code=409, detail="Payment route is not ready")

    recipient = body.recipient_pubkey or session.config.recipient_pubkey
    try:
        engine = session.new_billing_engine(
            recipient_pubkey=recipient or "",
            rate_per_second=body.rate_per_second_ckb or session.config.rate_per_second_ckb,
            interval_ms=body.interval_ms if body.interval_ms is not None else session.config.payment_interval_ms,
            min_payment_shannon=(
                body.min_payment_shannon
                if body.min_payment_shannon is not None
                else session.config.min_payment_shannon
            ),
        )
    except InvalidConfig as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        await engine.start()
    except NoRouteAvailable as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    session.billing = engine
    return _status_response(engine)


@router.post("/stop", response_model=BillingStatusResponse)
async def stop_billing(session: FiberSession = Depends(get_fiber_session)) -> BillingStatusResponse:
    if session.billing is not None:
        await session.billing.stop()
    return _status_response(session.billing)


@router.get("/status", response_model=BillingStatusResponse)
async def billing_status(session: FiberSession = Depends(get_fiber_session)) -> BillingStatusResponse:
    return _status_response(session.billing)


@router.get("/ticks", response_model=list[PaymentTickResponse])
async def billing_ticks(session: FiberSession = Depends(get_fiber_session)) -> list[PaymentTickResponse]:
    if session.billing is None:
        return []
    return [_tick_response(tick) for tick in session.billing.history()]
