from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from fiberpay.features.node.schemas import (
    ChannelResponse,
    ConnectPeerRequest,
    NodeInfoResponse,
    PeerResponse,
)
from fiberpay.platform.services.ckb import format_shannon
from fiberpay.platform.services.fiber_rpc import FiberRpcError
from fiberpay.platform.session import FiberSession, get_fiber_session

router = APIRouter(prefix="/node")


def _bad_gateway(exc: FiberRpcError) -> HTTPException:
    return HTTPException(status_code=502, detail=str(exc))


@router.get("", response_model=NodeInfoResponse)
async def node_info(session: FiberSession = Depends(get_fiber_session)) -> NodeInfoResponse:
    try:
        info = await session.client.node_info()
    except FiberRpcError as exc:
        raise _bad_gateway(exc) from exc

    return NodeInfoResponse(
        version=info.version,
        public_key=info.public_key,
        node_name=info.node_name,
        addresses=info.addresses,
        channel_count=info.channel_count,
        pending_channel_count=info.pending_channel_count,
        peers_count=info.peers_count,
    )


@router.get("/channels", response_model=list[ChannelResponse])
async def list_channels(
    peer_id: str | None = None,
    include_closed: bool = False,
    session: FiberSession = Depends(get_fiber_session),
) -> list[ChannelResponse]:
    try:
        channels = await session.client.list_channels(peer_id=peer_id, include_closed=include_closed)
    except FiberRpcError as exc:
        raise _bad_gateway(exc) from exc

    return [
        ChannelResponse(
            channel_id=channel.channel_id,
            peer_id=channel.peer_id,
            state_name=channel.state_name,
            local_balance=channel.local_balance,
            remote_balance=channel.remote_balance,
            local_balance_ckb=format_shannon(channel.local_balance),
        )
        for channel in channels
    ]


@router.get("/peers", response_model=list[PeerResponse])
async def list_peers(session: FiberSession = Depends(get_fiber_session)) -> list[PeerResponse]:
    try:
        peers = await session.client.list_peers()
    except FiberRpcError as exc:
        raise _bad_gateway(exc) from exc

    return [PeerResponse(peer_id=p.peer_id, pubkey=p.pubkey, address=p.address) for p in peers]


@router.post("/peers", response_model=list[PeerResponse])
async def connect_peer(
    body: ConnectPeerRequest,
    session: FiberSession = Depends(get_fiber_session),
) -> list[PeerResponse]:
    address = body.address.strip()
    if not address:
        raise HTTPException(status_code=400, detail="Peer address is required")

    try:
        await session.client.connect_peer(address)
        peers = await session.client.list_peers()
    except FiberRpcError as exc:
        raise _bad_gateway(exc) from exc

    return [PeerResponse(peer_id=p.peer_id, pubkey=p.pubkey, address=p.address) for p in peers]
