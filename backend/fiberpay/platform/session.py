from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import Request

from fiberpay.features.billing.engine import BillingConfig, BillingEngine
from fiberpay.features.channels.controller import ChannelLifecycleController
from fiberpay.platform.config import Settings, settings
from fiberpay.platform.services.fiber_rpc import FiberRpcClient

logger = logging.getLogger(__name__)


class FiberSession:
    """Everything one client session shares: the RPC client and both controllers.

    The channel controller lives as long as the session. A billing engine is
    created per streaming session and replaced on the next start.
    """

    def __init__(self, client: FiberRpcClient, config: Settings | None = None) -> None:
        self.client = client
        self.config = config or settings
        self.channels = ChannelLifecycleController(
            client,
            poll_interval_seconds=self.config.channel_poll_interval_seconds,
            max_attempts=self.config.channel_poll_max_attempts,
        )
        self.billing: BillingEngine | None = None

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "FiberSession":
        config = config or settings
        client = FiberRpcClient(config.fiber_rpc_url, timeout_seconds=config.fiber_rpc_timeout_seconds)
        return cls(client, config)

    def new_billing_engine(
        self,
        *,
        recipient_pubkey: str,
        rate_per_second: Decimal | str,
        interval_ms: int,
        min_payment_shannon: int,
    ) -> BillingEngine:
        billing_config = BillingConfig(
            rpc_url=self.client.url,
            recipient_pubkey=recipient_pubkey,
            rate_per_second=rate_per_second,
            interval_ms=interval_ms,
            min_payment_shannon=min_payment_shannon,
        )
        return BillingEngine(
            self.client,
            billing_config,
            history_limit=self.config.tick_history_limit,
            settle_attempts=self.config.payment_settle_attempts,
            settle_interval_seconds=self.config.payment_settle_interval_seconds,
        )

    async def aclose(self) -> None:
        if self.billing is not None and self.billing.is_active():
            await self.billing.stop()
        await self.channels.aclose()
        logger.info("Fiber session closed")


def get_fiber_session(request: Request) -> FiberSession:
    return request.app.state.fiber_session
