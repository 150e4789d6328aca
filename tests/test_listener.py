import pytest
import pytest_asyncio
from unittest.mock import patch
from tenacity import stop_after_attempt, wait_none

from reconciler.events import EventKind
from reconciler.handlers import apply_event
from reconciler.listener import BlockchainListener
from reconciler.models import BlockchainPayment, BlockchainSubscription, DeadLetterEvent
from reconciler.source import Web3EventSource
from fakes import FakeEventSource, payment_log, subscription_created_log, wait_until


@pytest.fixture
def source():
    return FakeEventSource(head=100)


@pytest_asyncio.fixture
async def make_listener(session_factory):
    listeners = []

    def make(source, **options):
        options.setdefault("backfill_blocks", 60)
        options.setdefault("resync_interval", 0)
        options.setdefault("write_timeout", 30)
        options.setdefault("reconnect_wait", wait_none())
        listener = BlockchainListener(source, session_factory, **options)
        listeners.append(listener)
        return listener

    yield make
    for listener in listeners:
        await listener.stop()


@pytest.mark.asyncio
async def test_start_replays_backfill_window_then_follows_live(source, make_listener, count_rows):
    """
    Test case 1: Historical payments inside the window are replayed before the live stream starts.
    """
    source.history = [
        payment_log(tx="0xold", order_id="order_old", block=5),
        payment_log(tx="0xrecent", order_id="order_recent", block=50),
        subscription_created_log(block=60),
    ]
    source.live = [payment_log(tx="0xlive", order_id="order_live", block=101)]
    listener = make_listener(source)

    await listener.start()

    assert listener.is_listening
    assert source.fetch_calls == [((EventKind.PAYMENT_MADE,), 40, 100)]
    assert listener.synced_block == 100

    async def caught_up():
        return listener.last_block == 101
    await wait_until(caught_up)

    assert source.stream_calls == [101]
    assert await count_rows(BlockchainPayment, BlockchainPayment.transaction_hash == "0xlive") == 1
    assert await count_rows(BlockchainPayment, BlockchainPayment.transaction_hash == "0xrecent") == 1
    assert await count_rows(BlockchainPayment, BlockchainPayment.transaction_hash == "0xold") == 0
    # Only payments are backfilled
    assert await count_rows(BlockchainSubscription) == 0


@pytest.mark.asyncio
async def test_backfill_window_clamped_at_genesis(make_listener):
    source = FakeEventSource(head=10)
    listener = make_listener(source, backfill_blocks=10000)

    await listener.start()

    assert source.fetch_calls == [((EventKind.PAYMENT_MADE,), 0, 10)]


@pytest.mark.asyncio
async def test_rpc_error_during_backfill_does_not_block_live(source, make_listener, count_rows):
    """
    Test case 2: A failing historical query is logged and the live stream still starts.
    """
    source.fail_fetch = True
    source.live = [payment_log(tx="0xlive", block=101)]
    listener = make_listener(source)

    await listener.start()

    assert listener.is_listening
    assert listener.synced_block is None

    async def live_payment_stored():
        return await count_rows(BlockchainPayment) == 1
    await wait_until(live_payment_stored)
    # The live stream starts at the head seen when it was opened
    assert source.stream_calls == [101]


@pytest.mark.asyncio
async def test_failed_write_does_not_abort_backfill(source, make_listener, count_rows):
    source.history = [
        payment_log(tx="0xfirst", order_id="order_a", block=60),
        payment_log(tx="0xsecond", order_id="order_b", block=61),
    ]
    listener = make_listener(source)

    async def fail_first(session, event):
        if event.transaction_hash == "0xfirst":
            raise RuntimeError("constraint violated")
        return await apply_event(session, event)

    with patch("reconciler.listener.apply_event", new=fail_first):
        replayed = await listener.sync_historical()

    assert replayed == 2
    assert await count_rows(BlockchainPayment, BlockchainPayment.transaction_hash == "0xsecond") == 1
    assert await count_rows(DeadLetterEvent, DeadLetterEvent.transaction_hash == "0xfirst") == 1


@pytest.mark.asyncio
async def test_start_twice_is_a_noop(source, make_listener):
    listener = make_listener(source)

    await listener.start()
    tasks = list(listener._tasks)
    await listener.start()

    assert listener._tasks == tasks
    assert len(source.fetch_calls) == 1


@pytest.mark.asyncio
async def test_stop_cancels_listener_tasks(source, make_listener):
    listener = make_listener(source, resync_interval=60)
    await listener.start()
    tasks = list(listener._tasks)
    assert len(tasks) == 2

    await listener.stop()

    assert not listener.is_listening
    assert all(task.done() for task in tasks)
    # Stopping again is harmless
    await listener.stop()


@pytest.mark.asyncio
async def test_stream_reconnects_after_failures(source, make_listener, count_rows):
    """
    Test case 3: The live stream is re-opened with backoff after the source drops.
    """
    source.stream_failures = 2
    source.live = [payment_log(tx="0xlive", block=105)]
    listener = make_listener(source)

    await listener.start()

    async def live_payment_stored():
        return await count_rows(BlockchainPayment) == 1
    await wait_until(live_payment_stored)
    assert source.stream_calls == [101, 101, 101]


@pytest.mark.asyncio
async def test_reconnect_resumes_from_last_processed_block(source, make_listener, count_rows):
    source.live = [
        payment_log(tx="0xa", order_id="order_a", block=110),
        payment_log(tx="0xb", order_id="order_b", block=120),
    ]
    source.disconnect_after = 1
    listener = make_listener(source)

    await listener.start()

    async def both_stored():
        return await count_rows(BlockchainPayment) == 2
    await wait_until(both_stored)
    assert source.stream_calls == [101, 110]


@pytest.mark.asyncio
async def test_listener_goes_inactive_when_reconnects_exhausted(source, make_listener):
    source.stream_failures = 5
    listener = make_listener(source, reconnect_stop=stop_after_attempt(2))

    await listener.start()

    async def stopped_listening():
        return not listener.is_listening
    await wait_until(stopped_listening)
    assert len(source.stream_calls) == 2


@pytest.mark.asyncio
async def test_periodic_resync_heals_missed_payments(source, make_listener, count_rows):
    listener = make_listener(source, resync_interval=0.05)
    await listener.start()

    # Emitted while the live stream was not looking
    source.history.append(payment_log(tx="0xmissed", block=90))

    async def missed_payment_stored():
        return await count_rows(BlockchainPayment, BlockchainPayment.transaction_hash == "0xmissed") == 1
    await wait_until(missed_payment_stored)


@pytest.mark.asyncio
async def test_status_reports_listener_state(source, make_listener):
    source.live = [payment_log(block=101)]
    listener = make_listener(source)

    status = await listener.status()
    assert status.is_listening is False
    assert status.contract_address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    assert status.rpc_url == "http://localhost:8545"
    assert status.current_block == 100

    await listener.start()

    async def caught_up():
        return listener.last_block == 101
    await wait_until(caught_up)
    status = await listener.status()
    assert status.is_listening is True
    assert status.last_block == 101


@pytest.mark.asyncio
async def test_status_without_rpc(source, make_listener):
    source.fail_block_number = True
    listener = make_listener(source)

    status = await listener.status()

    assert status.current_block is None
    assert status.is_listening is False


@pytest.mark.asyncio
async def test_reconnect_rescans_every_block_after_failed_backfill(make_listener):
    """
    Test case 4: With no backfill checkpoint, a dropped poll resumes at the first unscanned block.
    """
    source = Web3EventSource(
        "http://localhost:8545", "0x5FbDB2315678afecb367f032d93F642f64180aa3", poll_interval=0.01, confirmations=0
    )
    heads = iter([100, 100, 105, 110, 120])
    ranges = []

    async def block_number():
        return next(heads, 125)

    async def fetch(kinds, from_block, to_block):
        ranges.append((from_block, to_block))
        # The backfill and the second live poll fail
        if len(ranges) in (1, 3):
            raise ConnectionError("eth_getLogs failed")
        return []

    source.block_number = block_number
    source.fetch = fetch
    listener = make_listener(source, backfill_blocks=10000)

    await listener.start()

    async def caught_up():
        return len(ranges) == 5
    await wait_until(caught_up)

    assert ranges == [(0, 100), (101, 105), (106, 110), (106, 120), (121, 125)]
    live = ranges[1:]
    assert all(later[0] <= earlier[1] + 1 for earlier, later in zip(live, live[1:]))


@pytest.mark.asyncio
async def test_giving_up_stops_periodic_resync(source, make_listener):
    source.stream_failures = 5
    listener = make_listener(source, resync_interval=60, reconnect_stop=stop_after_attempt(2))

    await listener.start()
    tasks = list(listener._tasks)

    async def all_tasks_done():
        return all(task.done() for task in tasks)
    await wait_until(all_tasks_done)
    assert not listener.is_listening

    # A restart replaces the finished tasks with fresh ones
    source.stream_failures = 0
    await listener.start()
    assert listener.is_listening
    assert len(listener._tasks) == 2
    assert not any(task in tasks for task in listener._tasks)
