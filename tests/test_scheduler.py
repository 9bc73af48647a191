import pytest

from conftest import CHAIN_A, CHAIN_B
from vaultflow.constants import OperationKind
from vaultflow.errors import StateError, ValidationError
from vaultflow.events import BatchFailed
from vaultflow.ledger import InMemoryLedgerStore
from vaultflow.models import ChainTransactions
from vaultflow.orchestrator import Orchestrator

APPROVAL = OperationKind.APPROVAL
DEPOSIT = OperationKind.DEPOSIT


def _jobs(orch):
    return [(j.chain_id, j.kind, j.priority) for j in orch.queue_snapshot()]


def test_no_approval_when_allowance_covers_amount(settings, wallet):
    store = InMemoryLedgerStore({CHAIN_A: ChainTransactions(
        approval_handle="0xa", approval_confirmed_handle="0xa", last_approved_amount="500000000",
    )})
    orch = Orchestrator(settings, wallet, store=store)
    jobs = orch.enqueue_approval_and_deposit(CHAIN_A, "300")
    assert [j.kind for j in jobs] == [DEPOSIT]
    assert _jobs(orch) == [(CHAIN_A, DEPOSIT, 1)]


def test_approval_when_allowance_short(settings, wallet):
    store = InMemoryLedgerStore({CHAIN_A: ChainTransactions(last_approved_amount="299999999")})
    orch = Orchestrator(settings, wallet, store=store)
    orch.enqueue_approval_and_deposit(CHAIN_A, "300")
    assert _jobs(orch) == [(CHAIN_A, APPROVAL, 1), (CHAIN_A, DEPOSIT, 2)]


def test_fresh_batch_enqueues_two_jobs_per_chain(orch):
    run_id, jobs = orch.enqueue_batch([(CHAIN_A, "1"), (CHAIN_B, "2")])
    assert len(jobs) == 4
    for chain in (CHAIN_A, CHAIN_B):
        mine = {j.kind: j.priority for j in jobs if j.chain_id == chain}
        assert mine[APPROVAL] < mine[DEPOSIT]
    assert all(j.run_id == run_id for j in jobs)


def test_batch_priorities_follow_caller_order(settings, wallet):
    # B already approved 500 tokens and asks for 300
    store = InMemoryLedgerStore({CHAIN_B: ChainTransactions(
        approval_confirmed_handle="0xb", approval_handle="0xb", last_approved_amount="500000000",
    )})
    orch = Orchestrator(settings, wallet, store=store)
    orch.enqueue_batch([(CHAIN_A, "100"), (CHAIN_B, "300")])
    assert _jobs(orch) == [
        (CHAIN_A, APPROVAL, 1),
        (CHAIN_A, DEPOSIT, 2),
        (CHAIN_B, DEPOSIT, 11),
    ]


def test_enqueue_approval_is_deduplicated(orch):
    first = orch.enqueue_approval(CHAIN_A, "10")
    second = orch.enqueue_approval(CHAIN_A, "10")
    assert first.id == second.id
    assert len(orch.queue) == 1
    orch.enqueue_approval(CHAIN_A, "11")
    assert len(orch.queue) == 2


def test_unparsable_amount_still_queues_approval(orch):
    jobs = orch.enqueue_approval_and_deposit(CHAIN_A, "lots")
    assert [j.kind for j in jobs] == [APPROVAL, DEPOSIT]


def test_clear_queue_drops_pending_jobs(orch):
    orch.enqueue_batch([(CHAIN_A, "1"), (CHAIN_B, "2")])
    assert orch.clear_queue() == 4
    assert orch.queue_snapshot() == []


def test_batch_rejections_emit_batch_failed(orch):
    seen = []
    orch.bus.add_listener(seen.append, BatchFailed)

    with pytest.raises(ValidationError):
        orch.enqueue_batch([])
    with pytest.raises(ValidationError):
        orch.enqueue_batch([(CHAIN_A, "1"), (CHAIN_A, "2")])

    orch.enqueue_deposit(CHAIN_B, "1")
    with pytest.raises(StateError):
        orch.enqueue_batch([(CHAIN_A, "1"), (CHAIN_B, "2")])

    assert len(seen) == 3
    assert all(isinstance(e, BatchFailed) for e in seen)


def test_job_ids_are_unique(orch):
    a = orch.enqueue_approval(CHAIN_A, "1")
    b = orch.enqueue_deposit(CHAIN_A, "1")
    c = orch.enqueue_approval(CHAIN_B, "1")
    assert len({a.id, b.id, c.id}) == 3
    assert a.id.startswith("approval-1-")
