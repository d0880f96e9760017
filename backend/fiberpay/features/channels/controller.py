from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from fiberpay.platform.events import Subscribers
from fiberpay.platform.services.ckb import ckb_to_shannon
from fiberpay.platform.services.fiber_rpc import Channel, FiberRpcError

if TYPE_CHECKING:
    from fiberpay.platform.services.fiber_rpc import FiberRpcClient

logger = logging.getLogger(__name__)


DEFAULT_PROBE_SHANNON = ckb_to_shannon("0.01")
DEFAULT_FUNDING_SHANNON = ckb_to_shannon("100")

NO_ROUTE_MESSAGE = 'No payment route to recipient. Click "Open Channel" to create a direct channel.'
PEER_UNREACHABLE_MESSAGE = (
    "Cannot open channel: Peer not connected. The recipient node may be offline or unreachable. "
    "Try connecting to the peer first using their full address."
)
INSUFFICIENT_FUNDS_MESSAGE = (
    "Cannot open channel: Insufficient funds. Make sure your node has enough CKB to fund the channel."
)
ROUTE_CHECK_FAILED_MESSAGE = (
    "Could not check the payment route: the Fiber node returned an error or did not respond. "
    "Make sure the node is running and reachable, then check again."
)
CLOSED_MESSAGE = "Channel was closed unexpectedly"
TIMEOUT_MESSAGE = (
    "Channel opening timed out. It may still be pending on-chain. "
    "Try checking the route again in a minute."
)


class ChannelStatus(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    NO_ROUTE = "no_route"
    OPENING_CHANNEL = "opening_channel"
    WAITING_CONFIRMATION = "waiting_confirmation"
    READY = "ready"
    ERROR = "error"


CANCELLABLE_STATUSES = frozenset(
    {
        ChannelStatus.CHECKING,
        ChannelStatus.NO_ROUTE,
        ChannelStatus.OPENING_CHANNEL,
        ChannelStatus.WAITING_CONFIRMATION,
    }
)


@dataclass(frozen=True)
class ChannelSetupSnapshot:
    status: ChannelStatus = ChannelStatus.IDLE
    error_text: str | None = None
    remote_state_name: str | None = None
    elapsed_seconds: int = 0
    available_balance: int = 0


def classify_open_error(message: str) -> str:
    text = message.lower()
    if "peer" in text or "connect" in text or "not found" in text:
        return PEER_UNREACHABLE_MESSAGE
    if "insufficient" in text or "balance" in text or "fund" in text:
        return INSUFFICIENT_FUNDS_MESSAGE
    return f"Failed to open channel: {message}"


def pick_new_channel(channels: Iterable[Channel], known_ids: frozenset[str]) -> Channel | None:
    """Return the channel created by the latest open request, if it is visible yet.

    Channels that existed before the request are ignored. When several new
    channels show up, one still transitioning wins over a ready one, and a
    closed one loses to both; ties go to the most recently listed channel.
    """
    best: Channel | None = None
    best_key: tuple[int, int] | None = None
    for position, channel in enumerate(channels):
        if channel.channel_id in known_ids:
            continue
        if channel.is_closed:
            rank = 0
        elif channel.is_ready:
            rank = 1
        else:
            rank = 2
        key = (rank, position)
        if best_key is None or key > best_key:
            best, best_key = channel, key
    return best


class ChannelLifecycleController:
    def __init__(
        self,
        client: FiberRpcClient,
        *,
        poll_interval_seconds: float = 3.0,
        max_attempts: int = 200,
        elapsed_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds
        self._max_attempts = max_attempts
        self._elapsed_interval_seconds = elapsed_interval_seconds
        self._clock = clock

        self._state = ChannelSetupSnapshot()
        self._subscribers: Subscribers[ChannelSetupSnapshot] = Subscribers()
        self._attempt = 0
        self._cancelled = False
        self._poll_task: asyncio.Task | None = None
        self._elapsed_task: asyncio.Task | None = None

    def snapshot(self) -> ChannelSetupSnapshot:
        return self._state

    def subscribe(self, callback: Callable[[ChannelSetupSnapshot], None]) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    def _update(self, **changes) -> None:
        previous = self._state
        self._state = replace(previous, **changes)
        if self._state.status != previous.status:
            logger.info("Channel setup %s -> %s", previous.status.value, self._state.status.value)
        self._subscribers.publish(self._state)

    def _begin_attempt(self) -> int:
        self._stop_tasks()
        self._attempt += 1
        self._cancelled = False
        return self._attempt

    def _is_current(self, attempt: int) -> bool:
        return attempt == self._attempt and not self._cancelled

    async def check_route(self, recipient: str, probe_amount: int | None = None) -> bool:
        attempt = self._begin_attempt()
        self._update(status=ChannelStatus.CHECKING, error_text=None, remote_state_name=None)

        amount = probe_amount if probe_amount is not None else DEFAULT_PROBE_SHANNON
        try:
            direct = await self._client.find_channel_to_peer(recipient)
            if direct is not None:
                if self._is_current(attempt):
                    self._update(status=ChannelStatus.READY, available_balance=direct.local_balance)
                return self._is_current(attempt)

            can_route = await self._client.check_payment_route(recipient, amount)
            if not can_route:
                if self._is_current(attempt):
                    self._update(status=ChannelStatus.NO_ROUTE, error_text=NO_ROUTE_MESSAGE)
                return False

            channels = await self._client.list_channels()
        except FiberRpcError as exc:
            logger.warning("Route check to %s failed: %s", recipient, exc)
            if self._is_current(attempt):
                self._update(status=ChannelStatus.ERROR, error_text=ROUTE_CHECK_FAILED_MESSAGE)
            return False

        if not self._is_current(attempt):
            return False

        balance = sum(channel.local_balance for channel in channels if channel.is_ready)
        self._update(status=ChannelStatus.READY, available_balance=balance)
        return True

    async def open_channel(self, peer_id: str, funding_amount: int | None = None) -> ChannelSetupSnapshot:
        attempt = self._begin_attempt()
        self._update(
            status=ChannelStatus.OPENING_CHANNEL,
            error_text=None,
            remote_state_name=None,
            elapsed_seconds=0,
        )

        amount = funding_amount if funding_amount is not None else DEFAULT_FUNDING_SHANNON
        try:
            existing = await self._client.list_channels(peer_id=peer_id, include_closed=True)
            known_ids = frozenset(channel.channel_id for channel in existing)
            temporary_id = await self._client.open_channel(peer_id=peer_id, funding_amount=amount, public=True)
        except FiberRpcError as exc:
            logger.warning("Opening channel to %s failed: %s", peer_id, exc)
            if self._is_current(attempt):
                self._update(status=ChannelStatus.ERROR, error_text=classify_open_error(str(exc)))
            return self._state

        if not self._is_current(attempt):
            return self._state

        logger.info("Channel open requested to %s (temporary id %s)", peer_id, temporary_id)
        self._update(status=ChannelStatus.WAITING_CONFIRMATION)

        started = self._clock()
        self._elapsed_task = asyncio.create_task(self._track_elapsed(attempt, started))
        self._poll_task = asyncio.create_task(self._await_confirmation(attempt, peer_id, known_ids))
        return self._state

    async def wait(self) -> bool:
        task = self._poll_task
        if task is None:
            return self._state.status == ChannelStatus.READY
        await asyncio.wait({task})
        if task.cancelled():
            return False
        return task.result()

    def cancel(self) -> None:
        polling = self._poll_task is not None and not self._poll_task.done()
        if self._state.status not in CANCELLABLE_STATUSES and not polling:
            return

        self._cancelled = True
        self._stop_tasks()
        logger.info("Channel setup cancelled")
        self._update(
            status=ChannelStatus.IDLE,
            error_text=None,
            remote_state_name=None,
            elapsed_seconds=0,
        )

    async def aclose(self) -> None:
        tasks = [t for t in (self._poll_task, self._elapsed_task) if t is not None]
        self.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _stop_tasks(self) -> None:
        poll_task, self._poll_task = self._poll_task, None
        elapsed_task, self._elapsed_task = self._elapsed_task, None
        for task in (poll_task, elapsed_task):
            if task is not None and not task.done():
                task.cancel()

    async def _track_elapsed(self, attempt: int, started: float) -> None:
        while self._is_current(attempt):
            await asyncio.sleep(self._elapsed_interval_seconds)
            if not self._is_current(attempt):
                return
            self._update(elapsed_seconds=int(self._clock() - started))

    async def _await_confirmation(self, attempt: int, peer_id: str, known_ids: frozenset[str]) -> bool:
        try:
            return await self._poll_until_settled(attempt, peer_id, known_ids)
        except asyncio.CancelledError:
            if attempt != self._attempt or self._cancelled:
                return False
            raise
        finally:
            elapsed_task = self._elapsed_task
            if attempt == self._attempt and elapsed_task is not None:
                self._elapsed_task = None
                elapsed_task.cancel()

    async def _poll_until_settled(self, attempt: int, peer_id: str, known_ids: frozenset[str]) -> bool:
        for number in range(1, self._max_attempts + 1):
            if not self._is_current(attempt):
                return False

            try:
                channels = await self._client.list_channels(peer_id=peer_id, include_closed=True)
            except FiberRpcError as exc:
                logger.warning("Polling channel to %s failed (attempt %d): %s", peer_id, number, exc)
                channels = []

            if not self._is_current(attempt):
                return False

            channel = pick_new_channel(channels, known_ids)
            if channel is not None:
                if channel.is_ready:
                    self._update(
                        status=ChannelStatus.READY,
                        available_balance=channel.local_balance,
                        remote_state_name=None,
                    )
                    return True
                if channel.is_closed:
                    self._update(status=ChannelStatus.ERROR, error_text=CLOSED_MESSAGE, remote_state_name=None)
                    return False
                if channel.state_name != self._state.remote_state_name:
                    self._update(remote_state_name=channel.state_name)

            if number < self._max_attempts:
                await asyncio.sleep(self._poll_interval_seconds)

        if not self._is_current(attempt):
            return False
        self._update(status=ChannelStatus.ERROR, error_text=TIMEOUT_MESSAGE, remote_state_name=None)
        return False
