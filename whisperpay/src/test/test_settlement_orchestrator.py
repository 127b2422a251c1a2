import asyncio
import threading

import pytest
from web3 import Web3

from whisperpay.src.correlation_queue import CorrelationQueue, DequeuePolicy
from whisperpay.src.errors import ConfigurationError, InvalidAddress, SubmissionError
from whisperpay.src.ledger import LocalLedger
from whisperpay.src.models import FailureStage, PaymentItem, SettlementState, SettlementStatus
from whisperpay.src.settlement_orchestrator import (
    FUNDS_ARRIVED_EVENT,
    JOB_CREATED_EVENT,
    POST_OPS_FUNCTION,
    ROUTE_FUNDS_FUNCTION,
    SettlementOrchestrator,
)
from whisperpay.src.test.conftest import (
    CREATOR,
    DEALER,
    OTHER_CREATOR,
    RECIPIENTS,
    FakeChainClient,
    funds_arrived_log,
    job_created_log,
)


def _pending(ledger, creator, amounts):
    user = ledger.upsert_user(creator)
    ledger.create_pending_settlement(
        user.user_id,
        [PaymentItem(recipient=r, amount=a) for r, a in zip(RECIPIENTS, amounts)],
    )
    return user


@pytest.fixture
def orchestrator(chain_client, ledger):
    return SettlementOrchestrator(chain_client, ledger, DEALER, poll_interval=0.01)


# ==================== JOB CREATED ====================


@pytest.mark.asyncio
async def test_job_created_routes_funds_and_enqueues(orchestrator, chain_client):
    await orchestrator.handle_job_created([job_created_log(Web3.to_checksum_address(CREATOR))])

    (call,) = chain_client.function_calls(ROUTE_FUNDS_FUNCTION)
    assert call["address"] == DEALER
    assert call["args"] == (Web3.to_checksum_address(CREATOR),)
    assert orchestrator.correlation_queue.snapshot() == [CREATOR]
    assert orchestrator.state_of(CREATOR) == SettlementState.AWAITING_SETTLEMENT


@pytest.mark.asyncio
async def test_job_created_route_failure_is_recorded(orchestrator, chain_client, ledger):
    chain_client.failing_functions.add(ROUTE_FUNDS_FUNCTION)

    await orchestrator.handle_job_created([job_created_log(CREATOR)])

    assert len(orchestrator.correlation_queue) == 0
    assert orchestrator.state_of(CREATOR) == SettlementState.IDLE
    (failure,) = ledger.failures()
    assert failure.stage == FailureStage.ROUTE_FUNDS
    assert failure.creator == CREATOR
    assert "reverted" in failure.error


@pytest.mark.asyncio
async def test_job_created_skips_malformed_logs(orchestrator, chain_client):
    await orchestrator.handle_job_created(
        [{"args": {}}, job_created_log("0xnope"), job_created_log(OTHER_CREATOR)]
    )
    assert orchestrator.correlation_queue.snapshot() == [OTHER_CREATOR]
    assert len(chain_client.function_calls(ROUTE_FUNDS_FUNCTION)) == 1


# ==================== FUNDS ARRIVED ====================


@pytest.mark.asyncio
async def test_funds_arrived_with_empty_queue(orchestrator, chain_client, ledger):
    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert chain_client.calls == []
    assert chain_client.transfers == []
    (failure,) = ledger.failures()
    assert failure.stage == FailureStage.UNMATCHED_FUNDS
    assert failure.creator is None
    assert failure.target == Web3.to_hex(b"\x02" * 32)


@pytest.mark.asyncio
async def test_funds_arrived_pays_out_and_completes(orchestrator, chain_client, ledger):
    user = _pending(ledger, CREATOR, ["0.01", "0.02"])
    orchestrator.correlation_queue.enqueue(CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert chain_client.transfers == [
        (RECIPIENTS[0], 10**16),
        (RECIPIENTS[1], 2 * 10**16),
    ]
    (post_ops,) = chain_client.function_calls(POST_OPS_FUNCTION)
    assert post_ops["args"] == (Web3.to_checksum_address(CREATOR),)
    assert all(s.status == SettlementStatus.COMPLETED for s in ledger.settlements_for_user(user.user_id))
    assert orchestrator.state_of(CREATOR) == SettlementState.COMPLETED
    assert ledger.failures() == []


@pytest.mark.asyncio
async def test_one_failed_transfer_does_not_stop_the_rest(orchestrator, chain_client, ledger):
    _pending(ledger, CREATOR, ["0.1", "0.2", "0.3"])
    chain_client.failing_recipients.add(RECIPIENTS[1])
    orchestrator.correlation_queue.enqueue(CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert [to for to, _ in chain_client.transfers] == [RECIPIENTS[0], RECIPIENTS[2]]
    assert len(chain_client.function_calls(POST_OPS_FUNCTION)) == 1
    (failure,) = ledger.failures()
    assert failure.stage == FailureStage.TRANSFER
    assert failure.target == RECIPIENTS[1]
    assert ledger.pending_transfers_for_creator(CREATOR) is None


@pytest.mark.asyncio
async def test_post_ops_failure_still_completes(orchestrator, chain_client, ledger):
    _pending(ledger, CREATOR, ["0.1"])
    chain_client.failing_functions.add(POST_OPS_FUNCTION)
    orchestrator.correlation_queue.enqueue(CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert len(chain_client.transfers) == 1
    assert [f.stage for f in ledger.failures()] == [FailureStage.POST_OPS]
    assert ledger.pending_transfers_for_creator(CREATOR) is None


@pytest.mark.asyncio
async def test_creator_without_pending_items_still_gets_post_ops(orchestrator, chain_client):
    orchestrator.correlation_queue.enqueue(CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert chain_client.transfers == []
    assert len(chain_client.function_calls(POST_OPS_FUNCTION)) == 1
    assert orchestrator.state_of(CREATOR) == SettlementState.COMPLETED


@pytest.mark.asyncio
async def test_one_dequeue_per_funds_event(chain_client, ledger):
    orchestrator = SettlementOrchestrator(
        chain_client, ledger, DEALER, CorrelationQueue(DequeuePolicy.LIFO, ledger)
    )
    orchestrator.correlation_queue.enqueue(CREATOR)
    orchestrator.correlation_queue.enqueue(OTHER_CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    (post_ops,) = chain_client.function_calls(POST_OPS_FUNCTION)
    assert post_ops["args"] == (Web3.to_checksum_address(OTHER_CREATOR),)
    assert orchestrator.correlation_queue.snapshot() == [CREATOR]


@pytest.mark.asyncio
async def test_queue_survives_restart(chain_client, ledger_path):
    first = SettlementOrchestrator(chain_client, LocalLedger(ledger_path), DEALER)
    await first.handle_job_created([job_created_log(CREATOR)])

    restarted = SettlementOrchestrator(chain_client, LocalLedger(ledger_path), DEALER)
    await restarted.handle_funds_arrived([funds_arrived_log()])

    (post_ops,) = chain_client.function_calls(POST_OPS_FUNCTION)
    assert post_ops["args"] == (Web3.to_checksum_address(CREATOR),)


# ==================== MANUAL TRIGGER ====================


@pytest.mark.asyncio
async def test_trigger_transfer_enqueues_on_success(orchestrator, chain_client):
    tx_hash = await orchestrator.trigger_transfer(CREATOR)

    assert tx_hash.startswith("0x")
    assert len(chain_client.function_calls(ROUTE_FUNDS_FUNCTION)) == 1
    assert orchestrator.correlation_queue.snapshot() == [CREATOR]


@pytest.mark.asyncio
async def test_trigger_transfer_propagates_errors(orchestrator, chain_client):
    chain_client.failing_functions.add(ROUTE_FUNDS_FUNCTION)
    with pytest.raises(SubmissionError):
        await orchestrator.trigger_transfer(CREATOR)
    assert len(orchestrator.correlation_queue) == 0


@pytest.mark.asyncio
async def test_trigger_transfer_validates_and_requires_config(ledger):
    orchestrator = SettlementOrchestrator(None, ledger, None)
    with pytest.raises(InvalidAddress):
        await orchestrator.trigger_transfer("0x12")
    with pytest.raises(ConfigurationError):
        await orchestrator.trigger_transfer(CREATOR)


# ==================== LIFECYCLE ====================


@pytest.mark.asyncio
async def test_start_without_config_is_a_noop(ledger):
    orchestrator = SettlementOrchestrator(None, ledger, DEALER)
    assert await orchestrator.start() is False
    assert orchestrator.running is False
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_start_with_unsupported_chain(chain_client, ledger):
    chain_client.resolve_error = ConfigurationError("unsupported")
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER)
    assert await orchestrator.start() is False
    assert chain_client.filters == {}


@pytest.mark.asyncio
async def test_start_watch_and_stop(orchestrator, chain_client, ledger):
    _pending(ledger, CREATOR, ["0.5"])
    assert await orchestrator.start() is True
    assert set(chain_client.filters) == {JOB_CREATED_EVENT, FUNDS_ARRIVED_EVENT}

    chain_client.filters[JOB_CREATED_EVENT].push(job_created_log(CREATOR))
    for _ in range(200):
        if len(orchestrator.correlation_queue):
            break
        await asyncio.sleep(0.01)
    assert orchestrator.correlation_queue.snapshot() == [CREATOR]

    chain_client.filters[FUNDS_ARRIVED_EVENT].push(funds_arrived_log())
    for _ in range(200):
        if orchestrator.state_of(CREATOR) == SettlementState.COMPLETED:
            break
        await asyncio.sleep(0.01)
    assert chain_client.transfers == [(RECIPIENTS[0], 5 * 10**17)]

    health = orchestrator.health()
    assert health["running"] is True
    assert health["subscriptions"][JOB_CREATED_EVENT]["batches_handled"] == 1

    await orchestrator.stop()
    assert orchestrator.running is False
    assert sorted(chain_client.uninstalled) == sorted([JOB_CREATED_EVENT, FUNDS_ARRIVED_EVENT])


@pytest.mark.asyncio
async def test_one_watcher_failing_to_start_leaves_the_other(chain_client, ledger):
    real_filter = chain_client.event_filter

    def flaky_filter(address, abi, event_name):
        if event_name == JOB_CREATED_EVENT:
            raise SubmissionError("eth_newFilter not supported")
        return real_filter(address, abi, event_name)

    chain_client.event_filter = flaky_filter
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER, poll_interval=0.01)

    assert await orchestrator.start() is True
    assert [s.name for s in orchestrator.subscriptions] == [FUNDS_ARRIVED_EVENT]
    await orchestrator.stop()
    assert chain_client.uninstalled == [FUNDS_ARRIVED_EVENT]


# ==================== CONCURRENT WORK ====================


@pytest.mark.asyncio
async def test_batch_added_during_payout_stays_pending(chain_client, ledger):
    user = _pending(ledger, CREATOR, ["0.1"])
    real_send = chain_client.send_value

    def send_and_queue_new_batch(to, amount_wei):
        # a new encrypt request lands while the first batch is paid out
        ledger.create_pending_settlement(
            user.user_id, [PaymentItem(recipient=RECIPIENTS[2], amount="0.3")]
        )
        chain_client.send_value = real_send
        return real_send(to, amount_wei)

    chain_client.send_value = send_and_queue_new_batch
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER)
    orchestrator.correlation_queue.enqueue(CREATOR)

    await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert [to for to, _ in chain_client.transfers] == [RECIPIENTS[0]]
    statuses = [
        (s.items[0].recipient, s.status) for s in ledger.settlements_for_user(user.user_id)
    ]
    assert statuses == [
        (RECIPIENTS[0], SettlementStatus.COMPLETED),
        (RECIPIENTS[2], SettlementStatus.PENDING),
    ]
    (still_pending,) = [i.recipient for i in ledger.pending_transfers_for_creator(CREATOR).items]
    assert still_pending == RECIPIENTS[2]


class ThreadRecordingLedger(LocalLedger):
    """Remembers which threads touched the ledger"""

    def __init__(self):
        super().__init__()
        self.threads = set()

    def _touch(self):
        self.threads.add(threading.get_ident())

    def add_awaiting_funds(self, entry):
        self._touch()
        return super().add_awaiting_funds(entry)

    def remove_awaiting_funds(self, entry_id):
        self._touch()
        return super().remove_awaiting_funds(entry_id)

    def pending_transfers_for_creator(self, address):
        self._touch()
        return super().pending_transfers_for_creator(address)

    def find_user(self, address):
        self._touch()
        return super().find_user(address)

    def mark_completed(self, user_id, settlement_ids=None):
        self._touch()
        return super().mark_completed(user_id, settlement_ids)

    def record_failure(self, record):
        self._touch()
        return super().record_failure(record)


@pytest.mark.asyncio
async def test_ledger_work_stays_off_the_event_loop(chain_client):
    ledger = ThreadRecordingLedger()
    _pending(ledger, CREATOR, ["0.1", "0.2"])
    chain_client.failing_recipients.add(RECIPIENTS[1])
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER)
    ledger.threads.clear()

    await orchestrator.handle_job_created([job_created_log(CREATOR)])
    await orchestrator.handle_funds_arrived([funds_arrived_log(), funds_arrived_log()])
    await orchestrator.trigger_transfer(OTHER_CREATOR)

    assert ledger.threads
    assert threading.get_ident() not in ledger.threads


# ==================== STATE TRACKING ====================


@pytest.mark.asyncio
async def test_completed_creators_do_not_accumulate(chain_client, ledger):
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER, completed_history=2)
    creators = ["0x" + f"{n:02x}" * 20 for n in (0xA1, 0xA2, 0xA3)]
    for creator in creators:
        orchestrator.correlation_queue.enqueue(creator)
        await orchestrator.handle_funds_arrived([funds_arrived_log()])

    assert orchestrator.states == {}
    assert list(orchestrator.completed) == creators[1:]
    assert orchestrator.state_of(creators[0]) == SettlementState.IDLE
    assert orchestrator.state_of(creators[1]) == SettlementState.COMPLETED
    assert orchestrator.state_of(creators[2]) == SettlementState.COMPLETED


@pytest.mark.asyncio
async def test_completed_creator_can_start_again(orchestrator, chain_client):
    orchestrator.correlation_queue.enqueue(CREATOR)
    await orchestrator.handle_funds_arrived([funds_arrived_log()])
    assert orchestrator.state_of(CREATOR) == SettlementState.COMPLETED

    await orchestrator.handle_job_created([job_created_log(CREATOR)])
    assert orchestrator.state_of(CREATOR) == SettlementState.AWAITING_SETTLEMENT


@pytest.mark.asyncio
@pytest.mark.parametrize("manual", [False, True])
async def test_router_transfer_states(chain_client, ledger, manual):
    orchestrator = SettlementOrchestrator(chain_client, ledger, DEALER)
    seen = []
    real_route = chain_client.call_contract
    real_enqueue = orchestrator.correlation_queue.enqueue

    def route(*args, **kwargs):
        seen.append(orchestrator.state_of(CREATOR))
        return real_route(*args, **kwargs)

    def enqueue(creator):
        seen.append(orchestrator.state_of(creator))
        return real_enqueue(creator)

    chain_client.call_contract = route
    orchestrator.correlation_queue.enqueue = enqueue

    if manual:
        await orchestrator.trigger_transfer(CREATOR)
    else:
        await orchestrator.handle_job_created([job_created_log(CREATOR)])

    assert seen == [
        SettlementState.AWAITING_ROUTER_TRANSFER,
        SettlementState.ROUTER_TRANSFER_SUBMITTED,
    ]
    assert orchestrator.state_of(CREATOR) == SettlementState.AWAITING_SETTLEMENT


@pytest.mark.asyncio
async def test_failed_manual_trigger_resets_state(orchestrator, chain_client):
    chain_client.failing_functions.add(ROUTE_FUNDS_FUNCTION)
    with pytest.raises(SubmissionError):
        await orchestrator.trigger_transfer(CREATOR)
    assert orchestrator.state_of(CREATOR) == SettlementState.IDLE
