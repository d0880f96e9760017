from __future__ import annotations

import pytest

from fiberpay.platform.services.fiber_rpc import Channel, NodeInfo, PaymentResult, PeerInfo


class FakeFiberClient:
    def __init__(self) -> None:
        self.url = "http://fake-fiber"
        self.calls: list[str] = []

        self.route_ok = True
        self.route_error: Exception | None = None
        self.direct_channel: Channel | None = None
        self.channels: list[Channel] = []
        self.peer_channel_responses: list[list[Channel] | Exception] = []
        self.open_error: Exception | None = None
        self.payment_results: list[PaymentResult | Exception] = []
        self.payment_lookups: list[PaymentResult] = []
        self.sent_amounts: list[int] = []
        self.probe_amounts: list[int] = []
        self.peers: list[PeerInfo] = []
        self.node_error: Exception | None = None

    async def node_info(self) -> NodeInfo:
        self.calls.append("node_info")
        if self.node_error is not None:
            raise self.node_error
        return NodeInfo(
            version="0.5.0",
            public_key="0xnodepubkey",
            node_name="fake",
            addresses=["/ip4/127.0.0.1/tcp/8228"],
            channel_count=len(self.channels),
            pending_channel_count=0,
            peers_count=len(self.peers),
        )

    async def list_channels(self, *, peer_id: str | None = None, include_closed: bool = False) -> list[Channel]:
        self.calls.append("list_channels")
        if peer_id is not None and self.peer_channel_responses:
            response = self.peer_channel_responses[0]
            if len(self.peer_channel_responses) > 1:
                self.peer_channel_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return list(response)
        return list(self.channels)

    async def list_peers(self) -> list[PeerInfo]:
        self.calls.append("list_peers")
        return list(self.peers)

    async def connect_peer(self, address: str) -> None:
        self.calls.append("connect_peer")
        self.peers.append(PeerInfo(peer_id=f"peer-{len(self.peers)}", pubkey=None, address=address))

    async def open_channel(self, *, peer_id: str, funding_amount: int, public: bool = True) -> str:
        self.calls.append("open_channel")
        if self.open_error is not None:
            raise self.open_error
        return "0xtemporary"

    async def keysend(self, target_pubkey: str, amount: int, custom_records: dict | None = None) -> PaymentResult:
        self.calls.append("keysend")
        self.sent_amounts.append(amount)
        outcome = self.payment_results.pop(0) if self.payment_results else success_payment()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_payment(self, payment_hash: str) -> PaymentResult:
        self.calls.append("get_payment")
        return self.payment_lookups.pop(0) if self.payment_lookups else success_payment(payment_hash)

    async def find_channel_to_peer(self, peer_id: str) -> Channel | None:
        self.calls.append("find_channel_to_peer")
        return self.direct_channel

    async def check_payment_route(self, target_pubkey: str, amount: int) -> bool:
        self.calls.append("check_payment_route")
        self.probe_amounts.append(amount)
        if self.route_error is not None:
            raise self.route_error
        return self.route_ok


def success_payment(payment_hash: str = "0xhash") -> PaymentResult:
    return PaymentResult(payment_hash=payment_hash, status="Success", failed_error=None, fee=0)


def make_channel(channel_id: str, state_name: str, local_balance: int = 0, peer_id: str = "peer-1") -> Channel:
    return Channel(
        channel_id=channel_id,
        peer_id=peer_id,
        state_name=state_name,
        local_balance=local_balance,
        remote_balance=0,
        created_at=None,
    )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def fake_client() -> FakeFiberClient:
    return FakeFiberClient()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
