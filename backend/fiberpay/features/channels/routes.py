from __future__ import annotations

from decimal import InvalidOperation

from fastapi import APIRouter, Depends, HTTPException

from fiberpay.features.channels.controller import ChannelSetupSnapshot
from fiberpay.features.channels.schemas import (
    ChannelSetupResponse,
    CheckRouteRequest,
    CheckRouteResponse,
    OpenChannelRequest,
)
from fiberpay.platform.services.ckb import ckb_to_shannon, format_shannon
from fiberpay.platform.session import FiberSession, get_fiber_session

router = APIRouter(prefix="/channel")


def _setup_response(snapshot: ChannelSetupSnapshot) -> ChannelSetupResponse:
    return ChannelSetupResponse(
        status=snapshot.status.value,
        error_text=snapshot.error_text,
        remote_state_name=snapshot.remote_state_name,
        elapsed_seconds=snapshot.elapsed_seconds,
        available_balance=snapshot.available_balance,
        available_balance_ckb=format_shannon(snapshot.available_balance),
    )


def _parse_ckb(value: str | None, field: str) -> int | None:
    if value is None:
        return None
    try:
        amount = ckb_to_shannon(value)
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=422, detail=f"Invalid {field}") from exc
    if amount <= 0:
        raise HTTPException(status_code=422, detail=f"{field} must be positive")
    return amount


@router.get("/status", response_model=ChannelSetupResponse)
async def channel_status(session: FiberSession = Depends(get_fiber_session)) -> ChannelSetupResponse:
    return _setup_response(session.channels.snapshot())


@router.post("/check", response_model=CheckRouteResponse)
async def check_route(
    body: CheckRouteRequest,
    session: FiberSession = Depends(get_fiber_session),
) -> CheckRouteResponse:
    probe_amount = _parse_ckb(body.probe_amount_ckb, "probe_amount_ckb")
    if probe_amount is None:
        probe_amount = ckb_to_shannon(session.config.route_probe_ckb)

    can_route = await session.channels.check_route(body.recipient, probe_amount)
    base = _setup_response(session.channels.snapshot())
    return CheckRouteResponse(**base.model_dump(), can_route=can_route)


@router.post("/open", response_model=ChannelSetupResponse)
async def open_channel(
    body: OpenChannelRequest,
    session: FiberSession = Depends(get_fiber_session),
) -> ChannelSetupResponse:
    funding_amount = _parse_ckb(body.funding_amount_ckb, "funding_amount_ckb")
    if funding_amount is None:
        funding_amount = ckb_to_shannon(session.config.default_funding_ckb)

    snapshot = await session.channels.open_channel(body.peer_id, funding_amount)
    return _setup_response(snapshot)


@router.post("/cancel", response_model=ChannelSetupResponse)
async def cancel_channel_setup(session: FiberSession = Depends(get_fiber_session)) -> ChannelSetupResponse:
    session.channels.cancel()
    return _setup_response(session.channels.snapshot())
