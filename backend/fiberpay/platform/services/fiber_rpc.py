from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

import httpx

from fiberpay.platform.config import settings
from fiberpay.platform.services.ckb import from_hex, to_hex

logger = logging.getLogger(__name__)


CHANNEL_READY = "ChannelReady"
CHANNEL_CLOSED = "Closed"

PAYMENT_SUCCESS = "Success"
PAYMENT_FAILED = "Failed"
PAYMENT_PENDING_STATUSES = frozenset({"Created", "Inflight"})


class FiberRpcError(RuntimeError):
    pass


class FiberRemoteError(FiberRpcError):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC Error {code}: {message}")
        self.code = code
        self.remote_message = message


class FiberTransportError(FiberRpcError):
    pass


@dataclass(frozen=True)
class NodeInfo:
    version: str
    public_key: str
    node_name: str | None
    addresses: list[str]
    channel_count: int
    pending_channel_count: int
    peers_count: int


@dataclass(frozen=True)
class Channel:
    channel_id: str
    peer_id: str
    state_name: str
    local_balance: int
    remote_balance: int
    created_at: int | None

    @property
    def is_ready(self) -> bool:
        return self.state_name == CHANNEL_READY

    @property
    def is_closed(self) -> bool:
        return self.state_name == CHANNEL_CLOSED


@dataclass(frozen=True)
class PeerInfo:
    peer_id: str
    pubkey: str | None
    address: str | None


@dataclass(frozen=True)
class PaymentResult:
    payment_hash: str
    status: str
    failed_error: str | None
    fee: int


@dataclass(frozen=True)
class NewInvoiceResult:
    invoice_address: str
    payment_hash: str | None
    amount: int | None


def _hex_or_int(value: object, default: int = 0) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        return from_hex(value)
    return default


def _parse_channel(raw: dict) -> Channel:
    state = raw.get("state") or {}
    state_name = state.get("state_name") if isinstance(state, dict) else None
    created_at = raw.get("created_at")
    return Channel(
        channel_id=str(raw.get("channel_id", "")),
        peer_id=str(raw.get("peer_id") or raw.get("pubkey") or ""),
        state_name=str(state_name or "Unknown"),
        local_balance=_hex_or_int(raw.get("local_balance")),
        remote_balance=_hex_or_int(raw.get("remote_balance")),
        created_at=_hex_or_int(created_at) if created_at is not None else None,
    )


def _parse_payment(raw: dict) -> PaymentResult:
    failed_error = raw.get("failed_error")
    return PaymentResult(
        payment_hash=str(raw.get("payment_hash", "")),
        status=str(raw.get("status", "")),
        failed_error=str(failed_error) if failed_error else None,
        fee=_hex_or_int(raw.get("fee")),
    )


class FiberRpcClient:
    def __init__(self, url: str | None = None, timeout_seconds: float | None = None) -> None:
        self._url = url or settings.fiber_rpc_url
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.fiber_rpc_timeout_seconds
        self._ids = itertools.count(1)

    @property
    def url(self) -> str:
        return self._url

    async def _call(self, method: str, params: list) -> object:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise FiberTransportError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise FiberTransportError(f"{method} returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise FiberTransportError(f"{method} returned a non-object response")

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raise FiberRemoteError(int(error.get("code", -1)), str(error.get("message", "")))
            raise FiberRemoteError(-1, str(error))

        if "result" not in data:
            raise FiberTransportError(f"{method} returned no result")

        return data["result"]

    async def node_info(self) -> NodeInfo:
        result = await self._call("node_info", [{}])
        if not isinstance(result, dict):
            raise FiberTransportError("node_info returned invalid result")

        return NodeInfo(
            version=str(result.get("version", "")),
            public_key=str(result.get("public_key") or result.get("node_id") or ""),
            node_name=result.get("node_name"),
            addresses=[str(a) for a in result.get("addresses") or []],
            channel_count=_hex_or_int(result.get("channel_count", result.get("open_channel_count"))),
            pending_channel_count=_hex_or_int(result.get("pending_channel_count")),
            peers_count=_hex_or_int(result.get("peers_count")),
        )

    async def list_channels(self, *, peer_id: str | None = None, include_closed: bool = False) -> list[Channel]:
        params: dict = {}
        if peer_id:
            params["peer_id"] = peer_id
        if include_closed:
            params["include_closed"] = True

        result = await self._call("list_channels", [params])
        raw_channels = result.get("channels") if isinstance(result, dict) else None
        return [_parse_channel(raw) for raw in raw_channels or [] if isinstance(raw, dict)]

    async def list_peers(self) -> list[PeerInfo]:
        result = await self._call("list_peers", [{}])
        raw_peers = result.get("peers") if isinstance(result, dict) else None

        peers: list[PeerInfo] = []
        for raw in raw_peers or []:
            if not isinstance(raw, dict):
                continue
            peers.append(
                PeerInfo(
                    peer_id=str(raw.get("peer_id", "")),
                    pubkey=raw.get("pubkey"),
                    address=raw.get("address"),
                )
            )
        return peers

    async def connect_peer(self, address: str) -> None:
        await self._call("connect_peer", [{"address": address}])

    async def open_channel(self, *, peer_id: str, funding_amount: int, public: bool = True) -> str:
        result = await self._call(
            "open_channel",
            [{"peer_id": peer_id, "funding_amount": to_hex(funding_amount), "public": public}],
        )
        temporary_id = result.get("temporary_channel_id") if isinstance(result, dict) else None
        if not isinstance(temporary_id, str) or not temporary_id:
            raise FiberTransportError("open_channel returned no temporary_channel_id")
        return temporary_id

    async def send_payment(
        self,
        *,
        target_pubkey: str | None = None,
        amount: int | None = None,
        invoice: str | None = None,
        keysend: bool = False,
        dry_run: bool = False,
        custom_records: dict[str, str] | None = None,
    ) -> PaymentResult:
        params: dict = {}
        if target_pubkey:
            params["target_pubkey"] = target_pubkey
        if amount is not None:
            params["amount"] = to_hex(amount)
        if invoice:
            params["invoice"] = invoice
        if keysend:
            params["keysend"] = True
        if dry_run:
            params["dry_run"] = True
        if custom_records:
            params["custom_records"] = custom_records

        result = await self._call("send_payment", [params])
        if not isinstance(result, dict):
            raise FiberTransportError("send_payment returned invalid result")
        return _parse_payment(result)

    async def keysend(self, target_pubkey: str, amount: int, custom_records: dict[str, str] | None = None) -> PaymentResult:
        return await self.send_payment(
            target_pubkey=target_pubkey,
            amount=amount,
            keysend=True,
            custom_records=custom_records,
        )

    async def get_payment(self, payment_hash: str) -> PaymentResult:
        result = await self._call("get_payment", [{"payment_hash": payment_hash}])
        if not isinstance(result, dict):
            raise FiberTransportError("get_payment returned invalid result")
        return _parse_payment(result)

    async def find_channel_to_peer(self, peer_id: str) -> Channel | None:
        channels = await self.list_channels(peer_id=peer_id)
        for channel in channels:
            if channel.is_ready and channel.local_balance > 0:
                return channel
        return None

    async def check_payment_route(self, target_pubkey: str, amount: int) -> bool:
        try:
            result = await self.send_payment(target_pubkey=target_pubkey, amount=amount, keysend=True, dry_run=True)
        except FiberRemoteError as exc:
            logger.info("Dry-run route probe to %s rejected: %s", target_pubkey, exc.remote_message)
            return False
        return result.status != PAYMENT_FAILED

    async def new_invoice(self, *, amount: int, currency: str = "Fibd", description: str | None = None, expiry_seconds: int | None = None) -> NewInvoiceResult:
        params: dict = {"amount": to_hex(amount), "currency": currency}
        if description:
            params["description"] = description
        if expiry_seconds is not None:
            params["expiry"] = to_hex(expiry_seconds)

        result = await self._call("new_invoice", [params])
        if not isinstance(result, dict) or not result.get("invoice_address"):
            raise FiberTransportError("new_invoice returned no invoice_address")

        invoice = result.get("invoice") or {}
        data = invoice.get("data") or {}
        raw_amount = invoice.get("amount")
        return NewInvoiceResult(
            invoice_address=str(result["invoice_address"]),
            payment_hash=data.get("payment_hash"),
            amount=_hex_or_int(raw_amount) if raw_amount is not None else None,
        )

    async def parse_invoice(self, invoice: str) -> dict:
        result = await self._call("parse_invoice", [{"invoice": invoice}])
        return result if isinstance(result, dict) else {}

    async def get_invoice(self, payment_hash: str) -> dict:
        result = await self._call("get_invoice", [{"payment_hash": payment_hash}])
        return result if isinstance(result, dict) else {}

    async def cancel_invoice(self, payment_hash: str) -> None:
        await self._call("cancel_invoice", [{"payment_hash": payment_hash}])

    async def settle_invoice(self, payment_hash: str, payment_preimage: str) -> None:
        await self._call("settle_invoice", [{"payment_hash": payment_hash, "payment_preimage": payment_preimage}])
