from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum
from typing import TYPE_CHECKING

from fiberpay.platform.events import Subscribers
from fiberpay.platform.services.ckb import SHANNON_PER_CKB, ckb_to_shannon, format_shannon
from fiberpay.platform.services.fiber_rpc import (
    PAYMENT_PENDING_STATUSES,
    PAYMENT_SUCCESS,
    FiberRpcError,
    PaymentResult,
)

if TYPE_CHECKING:
    from fiberpay.platform.services.fiber_rpc import FiberRpcClient

logger = logging.getLogger(__name__)


MIN_ROUTE_CHECK_CKB = Decimal("0.0001")

NO_ROUTE_MESSAGE = (
    "No payment route available to recipient. Please ensure you have an open channel "
    "with sufficient balance, either directly or through the Fiber network."
)


class BillingError(RuntimeError):
    pass


class InvalidConfig(BillingError):
    pass


class NoRouteAvailable(BillingError):
    pass


class SendFailed(BillingError):
    def __init__(self, message: str, payment_hash: str | None = None) -> None:
        super().__init__(message)
        self.payment_hash = payment_hash


class TickStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class BillingConfig:
    rpc_url: str
    recipient_pubkey: str
    rate_per_second: Decimal
    interval_ms: int = 1000
    min_payment_shannon: int = 1

    def __post_init__(self) -> None:
        try:
            rate = Decimal(str(self.rate_per_second))
        except InvalidOperation as exc:
            raise InvalidConfig(f"invalid rate_per_second: {self.rate_per_second!r}") from exc

        if not rate.is_finite() or rate <= 0:
            raise InvalidConfig("rate_per_second must be positive")
        if self.interval_ms <= 0:
            raise InvalidConfig("interval_ms must be positive")
        if self.min_payment_shannon < 1:
            raise InvalidConfig("min_payment_shannon must be at least 1")
        if not self.recipient_pubkey:
            raise InvalidConfig("recipient_pubkey is required")

        object.__setattr__(self, "rate_per_second", rate)

    @property
    def rate_shannon_per_second(self) -> Decimal:
        return self.rate_per_second * SHANNON_PER_CKB

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000


@dataclass(frozen=True)
class PaymentTick:
    sequence: int
    timestamp: datetime
    amount_shannon: int
    total_paid_shannon: int
    status: TickStatus
    payment_hash: str | None = None
    error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingEngine:
    """Turns wall-clock playback time into keysend payments to one recipient.

    Whole seconds are converted to shannon and added to a pending amount, which
    is only sent once it reaches the configured minimum. The pending amount is
    cleared by a successful send and nothing else, so owed value survives
    failed sends and is retried on the next tick.
    """

    def __init__(
        self,
        client: FiberRpcClient,
        config: BillingConfig,
        *,
        history_limit: int = 50,
        settle_attempts: int = 10,
        settle_interval_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._config = config
        self._settle_attempts = settle_attempts
        self._settle_interval_seconds = settle_interval_seconds
        self._clock = clock
        self._now = now

        self._subscribers: Subscribers[PaymentTick] = Subscribers()
        self._history: deque[PaymentTick] = deque(maxlen=history_limit)
        self._lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._timer: asyncio.Task | None = None

        self._is_streaming = False
        self._total_paid = 0
        self._accumulated_seconds = 0.0
        self._pending_amount = 0
        self._shannon_remainder = Decimal(0)
        self._last_tick = 0.0
        self._sequence = 0

    @property
    def config(self) -> BillingConfig:
        return self._config

    @property
    def pending_amount(self) -> int:
        return self._pending_amount

    @property
    def accumulated_seconds(self) -> float:
        return self._accumulated_seconds

    def subscribe(self, callback: Callable[[PaymentTick], None]) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    def get_total_paid(self) -> int:
        return self._total_paid

    def get_total_paid_formatted(self) -> str:
        return format_shannon(self._total_paid)

    def is_active(self) -> bool:
        return self._is_streaming

    def history(self) -> list[PaymentTick]:
        return list(self._history)

    async def check_payment_route(self, amount_ckb: Decimal) -> bool:
        return await self._client.check_payment_route(self._config.recipient_pubkey, ckb_to_shannon(amount_ckb))

    async def start(self) -> None:
        if self._is_streaming:
            return

        probe_ckb = max(self._config.rate_per_second, MIN_ROUTE_CHECK_CKB)
        try:
            can_pay = await self.check_payment_route(probe_ckb)
        except FiberRpcError as exc:
            raise NoRouteAvailable(f"{NO_ROUTE_MESSAGE} ({exc})") from exc

        if not can_pay:
            raise NoRouteAvailable(NO_ROUTE_MESSAGE)

        if self._is_streaming:
            return

        self._is_streaming = True
        self._last_tick = self._clock()
        self._accumulated_seconds = 0.0
        self._pending_amount = 0
        self._shannon_remainder = Decimal(0)

        self._stop_event = asyncio.Event()
        self._timer = asyncio.create_task(self._run_timer(self._stop_event))
        logger.info(
            "Streaming %s CKB/s to %s every %dms",
            self._config.rate_per_second,
            self._config.recipient_pubkey,
            self._config.interval_ms,
        )

    async def stop(self) -> None:
        if not self._is_streaming:
            return
        self._is_streaming = False

        if self._stop_event is not None:
            self._stop_event.set()
        timer, self._timer = self._timer, None
        if timer is not None:
            await timer

        await self.tick(flush=True)
        self._accumulated_seconds = 0.0
        logger.info("Streaming stopped; total paid %s shannon", self._total_paid)

    async def _run_timer(self, stop_event: asyncio.Event) -> None:
        interval = self._config.interval_seconds
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Billing tick failed")

    async def tick(self, *, flush: bool = False) -> PaymentTick | None:
        async with self._lock:
            if not self._is_streaming and not flush:
                return None

            now = self._clock()
            elapsed = max(0.0, now - self._last_tick)
            self._last_tick = now
            self._accumulated_seconds += elapsed

            threshold = self._config.min_payment_shannon
            whole_seconds = math.floor(self._accumulated_seconds)
            if whole_seconds > 0:
                self._accumulated_seconds -= whole_seconds
                self._pending_amount += self._accrue(whole_seconds)
            elif not (flush and self._pending_amount >= threshold):
                return None

            if self._pending_amount < threshold:
                return None

            return await self._send_pending()

    def _accrue(self, whole_seconds: int) -> int:
        exact = self._config.rate_shannon_per_second * whole_seconds + self._shannon_remainder
        accrued = int(exact.to_integral_value(rounding=ROUND_DOWN))
        self._shannon_remainder = exact - accrued
        return accrued

    async def _send_pending(self) -> PaymentTick:
        amount = self._pending_amount
        self._sequence += 1

        pending = PaymentTick(
            sequence=self._sequence,
            timestamp=self._now(),
            amount_shannon=amount,
            total_paid_shannon=self._total_paid + amount,
            status=TickStatus.PENDING,
        )
        self._subscribers.publish(pending)

        try:
            result = await self._send(amount)
        except (FiberRpcError, SendFailed) as exc:
            logger.warning("Payment of %s shannon failed, carrying forward: %s", amount, exc)
            resolved = replace(
                pending,
                status=TickStatus.FAILED,
                total_paid_shannon=self._total_paid,
                payment_hash=getattr(exc, "payment_hash", None),
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("Payment of %s shannon raised unexpectedly, carrying forward", amount)
            resolved = replace(
                pending,
                status=TickStatus.FAILED,
                total_paid_shannon=self._total_paid,
                error=f"Unexpected payment error: {exc}",
            )
        else:
            self._total_paid += amount
            self._pending_amount = 0
            resolved = replace(
                pending,
                status=TickStatus.SUCCESS,
                total_paid_shannon=self._total_paid,
                payment_hash=result.payment_hash or None,
            )

        self._history.append(resolved)
        self._subscribers.publish(resolved)
        return resolved

    async def _send(self, amount: int) -> PaymentResult:
        result = await self._client.keysend(self._config.recipient_pubkey, amount)

        attempts = 0
        while result.status in PAYMENT_PENDING_STATUSES and attempts < self._settle_attempts:
            attempts += 1
            await asyncio.sleep(self._settle_interval_seconds)
            result = await self._client.get_payment(result.payment_hash)

        if result.status != PAYMENT_SUCCESS:
            reason = result.failed_error or f"payment status {result.status or 'unknown'}"
            raise SendFailed(reason, payment_hash=result.payment_hash or None)

        return result
