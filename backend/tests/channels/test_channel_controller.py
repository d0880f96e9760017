import asyncio

import pytest

from conftest import FakeClock, FakeFiberClient, make_channel
from fiberpay.features.channels.controller import (
    CLOSED_MESSAGE,
    INSUFFICIENT_FUNDS_MESSAGE,
    NO_ROUTE_MESSAGE,
    PEER_UNREACHABLE_MESSAGE,
    ROUTE_CHECK_FAILED_MESSAGE,
    TIMEOUT_MESSAGE,
    ChannelLifecycleController,
    ChannelSetupSnapshot,
    ChannelStatus,
    classify_open_error,
    pick_new_channel,
)
from fiberpay.platform.services.fiber_rpc import FiberRemoteError, FiberTransportError


def _controller(client: FakeFiberClient, **kwargs) -> ChannelLifecycleController:
    kwargs.setdefault("poll_interval_seconds", 0)
    return ChannelLifecycleController(client, **kwargs)


@pytest.mark.asyncio
async def test_check_route_prefers_direct_channel(fake_client: FakeFiberClient) -> None:
    fake_client.direct_channel = make_channel("0xdirect", "ChannelReady", local_balance=5_000_000)
    controller = _controller(fake_client)

    assert await controller.check_route("peer-1") is True

    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.READY
    assert snapshot.available_balance == 5_000_000
    assert "check_payment_route" not in fake_client.calls


@pytest.mark.asyncio
async def test_check_route_dry_run_success_sums_ready_channels(fake_client: FakeFiberClient) -> None:
    fake_client.channels = [
        make_channel("0xa", "ChannelReady", local_balance=100),
        make_channel("0xb", "ChannelReady", local_balance=250),
        make_channel("0xc", "AwaitingChannelReady", local_balance=999),
    ]
    controller = _controller(fake_client)

    assert await controller.check_route("0xrecipient", 1_000_000) is True

    assert fake_client.probe_amounts == [1_000_000]
    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.READY
    assert snapshot.available_balance == 350


@pytest.mark.asyncio
async def test_check_route_without_route(fake_client: FakeFiberClient) -> None:
    fake_client.route_ok = False
    controller = _controller(fake_client)

    assert await controller.check_route("0xrecipient") is False

    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.NO_ROUTE
    assert snapshot.error_text == NO_ROUTE_MESSAGE


@pytest.mark.asyncio
async def test_check_route_transport_error(fake_client: FakeFiberClient) -> None:
    fake_client.route_error = FiberTransportError("connection refused")
    controller = _controller(fake_client)

    assert await controller.check_route("0xrecipient") is False

    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.ERROR
    assert snapshot.error_text == ROUTE_CHECK_FAILED_MESSAGE
    assert "connection refused" not in snapshot.error_text


@pytest.mark.asyncio
async def test_open_channel_waits_for_the_new_channel(fake_client: FakeFiberClient) -> None:
    old = make_channel("0xold", "ChannelReady", local_balance=7)
    fake_client.peer_channel_responses = [
        [old],
        [old],
        [old, make_channel("0xnew", "NegotiatingFunding")],
        [old, make_channel("0xnew", "AwaitingChannelReady")],
        [old, make_channel("0xnew", "ChannelReady", local_balance=10_000_000_000)],
    ]
    controller = _controller(fake_client)
    seen: list[ChannelSetupSnapshot] = []
    controller.subscribe(seen.append)

    snapshot = await controller.open_channel("peer-1", 10_000_000_000)
    assert snapshot.status == ChannelStatus.WAITING_CONFIRMATION

    assert await controller.wait() is True

    final = controller.snapshot()
    assert final.status == ChannelStatus.READY
    assert final.available_balance == 10_000_000_000
    assert final.remote_state_name is None

    statuses = []
    for item in seen:
        if not statuses or statuses[-1] != item.status:
            statuses.append(item.status)
    assert statuses == [
        ChannelStatus.OPENING_CHANNEL,
        ChannelStatus.WAITING_CONFIRMATION,
        ChannelStatus.READY,
    ]
    remote_states = [s.remote_state_name for s in seen if s.remote_state_name]
    assert remote_states == ["NegotiatingFunding", "AwaitingChannelReady"]


@pytest.mark.asyncio
async def test_open_channel_closed_before_ready_is_an_error(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [
        [],
        [make_channel("0xnew", "NegotiatingFunding")],
        [make_channel("0xnew", "Closed")],
        [make_channel("0xnew", "ChannelReady", local_balance=1)],
    ]
    controller = _controller(fake_client)

    await controller.open_channel("peer-1")

    assert await controller.wait() is False
    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.ERROR
    assert snapshot.error_text == CLOSED_MESSAGE


@pytest.mark.asyncio
async def test_open_channel_times_out(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [[], [make_channel("0xnew", "NegotiatingFunding")]]
    controller = _controller(fake_client, max_attempts=3)

    await controller.open_channel("peer-1")

    assert await controller.wait() is False
    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.ERROR
    assert snapshot.error_text == TIMEOUT_MESSAGE
    # one snapshot before the open request plus three polls
    assert fake_client.calls.count("list_channels") == 4


@pytest.mark.asyncio
async def test_poll_errors_are_retried(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [
        [],
        FiberTransportError("read timeout"),
        [make_channel("0xnew", "ChannelReady", local_balance=42)],
    ]
    controller = _controller(fake_client)

    await controller.open_channel("peer-1")

    assert await controller.wait() is True
    assert controller.snapshot().available_balance == 42


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (FiberRemoteError(-32000, "peer not found"), PEER_UNREACHABLE_MESSAGE),
        (FiberRemoteError(-32000, "Insufficient balance"), INSUFFICIENT_FUNDS_MESSAGE),
        (FiberRemoteError(-32000, "invalid parameter"), "Failed to open channel: RPC Error -32000: invalid parameter"),
    ],
)
async def test_open_channel_request_failure_is_classified(
    fake_client: FakeFiberClient, error: Exception, expected: str
) -> None:
    fake_client.open_error = error
    controller = _controller(fake_client)

    snapshot = await controller.open_channel("peer-1")

    assert snapshot.status == ChannelStatus.ERROR
    assert snapshot.error_text == expected
    assert await controller.wait() is False


def test_classify_open_error_categories() -> None:
    assert classify_open_error("failed to connect") == PEER_UNREACHABLE_MESSAGE
    assert classify_open_error("not enough funds") == INSUFFICIENT_FUNDS_MESSAGE
    assert classify_open_error("boom") == "Failed to open channel: boom"


@pytest.mark.asyncio
async def test_cancel_during_confirmation_stops_polling(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [[], [make_channel("0xnew", "NegotiatingFunding")]]
    controller = _controller(fake_client, poll_interval_seconds=3.0)

    await controller.open_channel("peer-1")
    for _ in range(10):
        await asyncio.sleep(0)
    assert controller.snapshot().remote_state_name == "NegotiatingFunding"

    waiter = asyncio.create_task(controller.wait())
    await asyncio.sleep(0)
    calls_before = len(fake_client.calls)
    controller.cancel()

    assert await asyncio.wait_for(waiter, timeout=1.0) is False
    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.IDLE
    assert snapshot.remote_state_name is None
    assert snapshot.elapsed_seconds == 0

    await asyncio.sleep(0.05)
    assert len(fake_client.calls) == calls_before


@pytest.mark.asyncio
async def test_cancel_from_idle_is_a_no_op(fake_client: FakeFiberClient) -> None:
    controller = _controller(fake_client)
    seen: list[ChannelSetupSnapshot] = []
    controller.subscribe(seen.append)

    controller.cancel()

    assert seen == []
    assert controller.snapshot().status == ChannelStatus.IDLE


@pytest.mark.asyncio
async def test_cancel_during_route_check_discards_result(fake_client: FakeFiberClient) -> None:
    release = asyncio.Event()

    async def slow_probe(target_pubkey: str, amount: int) -> bool:
        await release.wait()
        return True

    fake_client.check_payment_route = slow_probe
    controller = _controller(fake_client)

    check = asyncio.create_task(controller.check_route("0xrecipient"))
    await asyncio.sleep(0)
    assert controller.snapshot().status == ChannelStatus.CHECKING

    controller.cancel()
    release.set()

    assert await check is False
    assert controller.snapshot().status == ChannelStatus.IDLE


def test_pick_new_channel_ignores_existing_and_prefers_transitioning() -> None:
    known = frozenset({"0xold"})
    channels = [
        make_channel("0xold", "NegotiatingFunding"),
        make_channel("0xready", "ChannelReady", local_balance=1),
        make_channel("0xpending", "AwaitingChannelReady"),
    ]
    assert pick_new_channel(channels, known).channel_id == "0xpending"


def test_pick_new_channel_prefers_latest_among_equals() -> None:
    channels = [
        make_channel("0xfirst", "NegotiatingFunding"),
        make_channel("0xsecond", "NegotiatingFunding"),
    ]
    assert pick_new_channel(channels, frozenset()).channel_id == "0xsecond"
    assert pick_new_channel([make_channel("0xold", "ChannelReady")], frozenset({"0xold"})) is None


@pytest.mark.asyncio
async def test_cancel_after_confirmation_keeps_ready(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [[], [make_channel("0xnew", "ChannelReady", local_balance=100)]]
    controller = _controller(fake_client)

    await controller.open_channel("peer-1", 100)
    assert await controller.wait() is True

    controller.cancel()

    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.READY
    assert snapshot.available_balance == 100


@pytest.mark.asyncio
async def test_cancel_after_timeout_keeps_error(fake_client: FakeFiberClient) -> None:
    fake_client.peer_channel_responses = [[], [make_channel("0xnew", "NegotiatingFunding")]]
    controller = _controller(fake_client, max_attempts=2)

    await controller.open_channel("peer-1")
    assert await controller.wait() is False

    controller.cancel()

    snapshot = controller.snapshot()
    assert snapshot.status == ChannelStatus.ERROR
    assert snapshot.error_text == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_elapsed_seconds_advance_while_waiting(fake_client: FakeFiberClient, fake_clock: FakeClock) -> None:
    fake_client.peer_channel_responses = [[], [make_channel("0xnew", "NegotiatingFunding")]]
    controller = _controller(
        fake_client,
        poll_interval_seconds=0.01,
        max_attempts=10_000,
        elapsed_interval_seconds=0.01,
        clock=fake_clock,
    )
    elapsed: list[int] = []
    controller.subscribe(lambda snapshot: elapsed.append(snapshot.elapsed_seconds))

    await controller.open_channel("peer-1")
    for step, seconds in ((2, 2), (3, 5)):
        fake_clock.advance(step)
        for _ in range(100):
            await asyncio.sleep(0.01)
            if controller.snapshot().elapsed_seconds == seconds:
                break
        snapshot = controller.snapshot()
        assert snapshot.status == ChannelStatus.WAITING_CONFIRMATION
        assert snapshot.elapsed_seconds == seconds

    assert elapsed == sorted(elapsed)

    controller.cancel()
    assert controller.snapshot().elapsed_seconds == 0
