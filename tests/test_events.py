import asyncio

from conftest import CHAIN_A, CHAIN_B
from vaultflow.constants import ResultStatus, Step
from vaultflow.events import (
    BatchCompleted,
    BatchStarted,
    ChainCompleted,
    ChainFailed,
    EventBus,
    ProgressUpdated,
    StepCompleted,
    StepStarted,
    event_to_dict,
    progress_percentage,
)
from vaultflow.ledger import InMemoryLedgerStore
from vaultflow.models import ChainTransactions
from vaultflow.orchestrator import Orchestrator


def _record(bus):
    events = []
    bus.add_listener(events.append)
    return events


def _of(events, cls):
    return [e for e in events if isinstance(e, cls)]


def test_batch_event_sequence(orch):
    events = _record(orch.bus)
    asyncio.run(orch.execute_batch([(CHAIN_A, "1"), (CHAIN_B, "1")]))

    assert isinstance(events[0], BatchStarted)
    assert events[0].chain_count == 2
    assert events[0].total_steps == 6
    assert isinstance(events[-1], BatchCompleted)
    assert [r.status for r in events[-1].results] == [ResultStatus.SUCCESS, ResultStatus.SUCCESS]

    started = [(e.chain_id, e.step, e.step_number, e.chain_step) for e in _of(events, StepStarted)]
    assert started == [
        (CHAIN_A, Step.SWITCHING, 1, 1),
        (CHAIN_A, Step.APPROVING, 2, 2),
        (CHAIN_A, Step.DEPOSITING, 3, 3),
        (CHAIN_B, Step.SWITCHING, 4, 1),
        (CHAIN_B, Step.APPROVING, 5, 2),
        (CHAIN_B, Step.DEPOSITING, 6, 3),
    ]
    assert [e.percentage for e in _of(events, ProgressUpdated)] == [0.0, 16.67, 33.33, 50.0, 66.67, 83.33, 100.0]
    assert [e.chain_id for e in _of(events, ChainCompleted)] == [CHAIN_A, CHAIN_B]


def test_skipped_approval_is_reported(settings, wallet):
    store = InMemoryLedgerStore({CHAIN_A: ChainTransactions(
        approval_handle="0xa", approval_confirmed_handle="0xa", last_approved_amount="9000000",
    )})
    orch = Orchestrator(settings, wallet, store=store)
    events = _record(orch.bus)
    asyncio.run(orch.execute_batch([(CHAIN_A, "1")]))

    completed = [(e.step, e.skipped) for e in _of(events, StepCompleted)]
    assert completed == [(Step.SWITCHING, False), (Step.APPROVING, True), (Step.DEPOSITING, False)]
    assert _of(events, ProgressUpdated)[-1].percentage == 100.0


def test_failed_chain_still_reaches_full_progress(orch, wallet):
    wallet.simulate_fail[(CHAIN_A, "approve")] = RuntimeError("insufficient funds")
    events = _record(orch.bus)
    asyncio.run(orch.execute_batch([(CHAIN_A, "1"), (CHAIN_B, "1")]))

    (failed,) = _of(events, ChainFailed)
    assert failed.chain_id == CHAIN_A
    assert failed.result.status == ResultStatus.FAILED
    progress = [e.percentage for e in _of(events, ProgressUpdated)]
    assert progress == sorted(progress)
    assert 50.0 in progress
    assert progress[-1] == 100.0
    assert len(_of(events, BatchCompleted)) == 1


def test_single_chain_run_has_no_batch_events(orch):
    events = _record(orch.bus)
    orch.enqueue_approval_and_deposit(CHAIN_A, "1")
    asyncio.run(orch.process_queue())

    assert not _of(events, BatchStarted)
    assert not _of(events, ProgressUpdated)
    assert not _of(events, BatchCompleted)
    assert [e.step_number for e in _of(events, StepStarted)] == [1, 2, 3]
    assert len(_of(events, ChainCompleted)) == 1


def test_listener_errors_do_not_stop_delivery():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.add_listener(broken)
    listener = bus.add_listener(seen.append, ProgressUpdated)
    bus.emit(BatchStarted(chain_count=1, total_steps=3))
    bus.emit(ProgressUpdated(completed=1, total=3, percentage=33.33))
    assert len(seen) == 1

    bus.remove_listener(listener)
    bus.emit(ProgressUpdated(completed=2, total=3, percentage=66.67))
    assert len(seen) == 1


def test_subscriber_queue_drops_oldest_when_full():
    bus = EventBus(queue_size=2)
    q = bus.subscribe()
    for n in range(3):
        bus.emit(ProgressUpdated(completed=n, total=3, percentage=0.0))
    assert [q.get_nowait().completed for _ in range(2)] == [1, 2]
    bus.unsubscribe(q)
    bus.emit(BatchStarted(chain_count=1, total_steps=3))
    assert q.empty()


def test_event_to_dict_carries_type():
    d = event_to_dict(StepStarted(chain_id=1, step=Step.SWITCHING, step_number=1, total_steps=3, chain_step=1))
    assert d["type"] == "step_started"
    assert d["step"] == "switching"


def test_progress_percentage():
    assert progress_percentage(1, 6) == 16.67
    assert progress_percentage(0, 0) == 0.0
    assert progress_percentage(6, 6) == 100.0
