"""Priority job queue feeding the chain state machine.

Dispatch order is the total order (priority, insertion seq), lower first.
Within one enqueue call a chain's first job gets ``band + 1`` and its second
``band + 2``, so a deposit whose approval was skipped takes ``band + 1``. A
batch gives chain i the band ``i * 10``. At most
``concurrency`` jobs run at once and never two for the same chain.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass

import vaultflow.constants as C
from vaultflow.amounts import try_parse_amount
from vaultflow.config import Settings
from vaultflow.constants import OperationKind
from vaultflow.errors import JobCancelledError, OrchestratorError, StateError, ValidationError
from vaultflow.events import BatchFailed, EventBus
from vaultflow.ledger import TransactionLedger
from vaultflow.models import ChainOperation, ChainResult, OperationsState
from vaultflow.progress import RunTracker
from vaultflow.state_machine import ChainStateMachine

log = logging.getLogger("vaultflow.scheduler")

MAX_FINISHED_RUNS = 50


@dataclass(slots=True)
class _InFlight:
    job: ChainOperation
    signal: asyncio.Event
    task: asyncio.Task


class OperationQueue:
    def __init__(
        self,
        settings: Settings,
        ledger: TransactionLedger,
        machine: ChainStateMachine,
        state: OperationsState,
        bus: EventBus,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.machine = machine
        self.state = state
        self.bus = bus
        self.concurrency = max(1, settings.concurrency)
        self._queue: list[ChainOperation] = []
        self._in_flight: dict[str, _InFlight] = {}
        self._runs: dict[str, RunTracker] = {}
        self._seq = itertools.count()
        self._job_ids = itertools.count(1)
        self._run_ids = itertools.count(1)
        self._drain_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._last_dispatch = 0.0

    # =========================================================================
    # Read access
    # =========================================================================

    def snapshot(self) -> list[ChainOperation]:
        return sorted(self._queue, key=lambda j: j.sort_key)

    def in_flight(self) -> list[ChainOperation]:
        return [f.job for f in self._in_flight.values()]

    def __len__(self) -> int:
        return len(self._queue)

    def has_work(self, chain_id: int) -> bool:
        return any(j.chain_id == chain_id for j in self._queue) or self._busy(chain_id)

    def _busy(self, chain_id: int) -> bool:
        return any(f.job.chain_id == chain_id for f in self._in_flight.values()) or self.machine.is_locked(chain_id)

    def unconfirmed(self, chain_id: int) -> bool:
        """A ledger handle awaits confirmation and no live job owns it (restored at startup, or a timed out wait)."""
        return self.ledger.has_pending(chain_id) and not self._busy(chain_id)

    def _refuse_unconfirmed(self, chain_id: int) -> None:
        # new work would overwrite the only record of that transaction
        if self.unconfirmed(chain_id):
            raise StateError(f"{C.MSG_UNCONFIRMED} (chain {chain_id})", chain_id=chain_id)

    def run(self, run_id: str) -> RunTracker | None:
        return self._runs.get(run_id)

    def run_results(self, run_id: str) -> list[ChainResult]:
        run = self._runs.get(run_id)
        return run.results() if run else []

    def needs_approval(self, chain_id: int, amount: str) -> bool:
        """False only when the recorded allowance already covers `amount`."""
        chain = self.settings.chain(chain_id)
        if chain is None:
            return True
        units = try_parse_amount(amount, chain.decimals)
        if units is None:
            # let the approval job fail validation instead of silently dropping it
            return True
        return self.ledger.get(chain_id).approved_units() < units

    # =========================================================================
    # Enqueue
    # =========================================================================

    def _new_run(self, *, batch: bool = False) -> RunTracker:
        run = RunTracker(f"run-{next(self._run_ids)}", self.bus, batch=batch)
        self._runs[run.run_id] = run
        return run

    def _add(self, chain_id: int, kind: OperationKind, amount: str, priority: int, run: RunTracker) -> ChainOperation:
        amount = str(amount).strip()
        for j in self._queue:
            if j.same_work(chain_id, kind, amount):
                log.debug("Already queued: %s", j)
                return j
        job = ChainOperation(
            chain_id=chain_id,
            kind=kind,
            amount=amount,
            priority=priority,
            id=f"{kind}-{chain_id}-{next(self._job_ids)}",
            run_id=run.run_id,
            seq=next(self._seq),
        )
        self._queue.append(job)
        run.add_chain(chain_id, {kind})
        log.debug("Queued %s", job)
        return job

    def enqueue(self, op: ChainOperation) -> ChainOperation:
        """Queue a prepared job. A queued job with the same chain, kind and amount wins."""
        self._refuse_unconfirmed(op.chain_id)
        run = self._runs.get(op.run_id) if op.run_id else None
        fresh = run is None
        if fresh:
            run = self._new_run()
        job = self._add(op.chain_id, op.kind, op.amount, op.priority, run)
        if fresh:
            run.start()
        self._wake.set()
        return job

    def enqueue_approval(self, chain_id: int, amount: str) -> ChainOperation:
        self._refuse_unconfirmed(chain_id)
        run = self._new_run()
        job = self._add(chain_id, OperationKind.APPROVAL, amount, C.APPROVAL_OFFSET, run)
        run.start()
        self._wake.set()
        return job

    def enqueue_deposit(self, chain_id: int, amount: str) -> ChainOperation:
        self._refuse_unconfirmed(chain_id)
        run = self._new_run()
        job = self._add(chain_id, OperationKind.DEPOSIT, amount, C.DEPOSIT_OFFSET, run)
        run.start()
        self._wake.set()
        return job

    def _pair(self, chain_id: int, amount: str, band: int, run: RunTracker) -> list[ChainOperation]:
        jobs = []
        offset = C.APPROVAL_OFFSET
        if self.needs_approval(chain_id, amount):
            jobs.append(self._add(chain_id, OperationKind.APPROVAL, amount, band + offset, run))
            offset = C.DEPOSIT_OFFSET
        else:
            log.info("Chain %s allowance covers %s, skipping approval", chain_id, amount)
        jobs.append(self._add(chain_id, OperationKind.DEPOSIT, amount, band + offset, run))
        return jobs

    def enqueue_approval_and_deposit(self, chain_id: int, amount: str, band: int = 0) -> list[ChainOperation]:
        self._refuse_unconfirmed(chain_id)
        run = self._new_run()
        jobs = self._pair(chain_id, amount, band, run)
        run.start()
        self._wake.set()
        return jobs

    def enqueue_batch(self, intents: Iterable[tuple[int, str]]) -> tuple[str, list[ChainOperation]]:
        """Queue approval/deposit pairs for several chains in caller order.

        Raises ValidationError or StateError (after emitting BatchFailed)
        when the batch cannot start.
        """
        intents = [(int(c), str(a)) for c, a in intents]
        error: OrchestratorError | None = None
        chain_ids = [c for c, _ in intents]
        if not intents:
            error = ValidationError("Batch has no chains")
        elif len(set(chain_ids)) != len(chain_ids):
            error = ValidationError("Batch lists the same chain more than once")
        else:
            busy = [c for c in chain_ids if self.has_work(c)]
            unconfirmed = [c for c in chain_ids if self.unconfirmed(c)]
            if busy:
                error = StateError(f"{C.MSG_BATCH_RUNNING} (chains with work: {busy})")
            elif unconfirmed:
                error = StateError(f"{C.MSG_UNCONFIRMED} (chains: {unconfirmed})")
        if error is not None:
            self.bus.emit(BatchFailed(error=error.message))
            raise error

        run = self._new_run(batch=True)
        jobs = []
        for index, (chain_id, amount) in enumerate(intents):
            jobs.extend(self._pair(chain_id, amount, index * C.PRIORITY_BAND, run))
        run.start()
        self._wake.set()
        log.info("Batch %s queued: %s chain(s), %s job(s)", run.run_id, len(intents), len(jobs))
        return run.run_id, jobs

    # =========================================================================
    # Removal
    # =========================================================================

    def _drop(self, jobs: list[ChainOperation], err: OrchestratorError) -> None:
        for j in jobs:
            self._queue.remove(j)
            run = self._runs.get(j.run_id)
            if run is not None:
                run.job_failed(j.chain_id, err)

    def _prune_chain(self, chain_id: int, cause: OrchestratorError) -> list[ChainOperation]:
        doomed = [j for j in self._queue if j.chain_id == chain_id]
        if doomed:
            err = JobCancelledError(f"Skipped: {cause.kind} on chain {chain_id}", chain_id=chain_id,
                                    is_user_cancellation=cause.is_user_cancellation)
            self._drop(doomed, err)
            log.info("Pruned %s queued job(s) for chain %s", len(doomed), chain_id)
        return doomed

    def clear_queue(self, reason: OrchestratorError | None = None) -> int:
        """Drop every job not yet dispatched. In-flight work is left alone."""
        doomed = list(self._queue)
        self._drop(doomed, reason or JobCancelledError("Removed from queue"))
        log.info("Queue cleared (%s job(s))", len(doomed))
        return len(doomed)

    def cancel(self) -> int:
        """Abort in-flight jobs at their current suspension point and drain the queue."""
        n = self.clear_queue(JobCancelledError())
        for f in self._in_flight.values():
            f.signal.set()
        log.info("Cancel requested: %s in flight, %s drained", len(self._in_flight), n)
        return n

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _next_dispatchable(self) -> ChainOperation | None:
        for job in sorted(self._queue, key=lambda j: j.sort_key):
            if not self._busy(job.chain_id):
                return job
        return None

    async def _throttle(self) -> None:
        interval = self.settings.dispatch_interval
        if interval > 0:
            wait = self._last_dispatch + interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_dispatch = time.monotonic()

    async def _run_job(self, job: ChainOperation, signal: asyncio.Event) -> None:
        run = self._runs.get(job.run_id)
        try:
            await self.machine.execute(job, signal=signal, reporter=run)
        except OrchestratorError as e:
            if run is not None:
                run.job_failed(job.chain_id, e)
            # dependents go before anything else is dispatched
            self._prune_chain(job.chain_id, e)
        else:
            if run is not None:
                run.job_succeeded(job.chain_id, job.kind)
        finally:
            self._in_flight.pop(job.id, None)
            self._forget_finished_runs()

    def _forget_finished_runs(self) -> None:
        finished = [rid for rid, r in self._runs.items() if r.finished]
        for rid in finished[: max(0, len(finished) - MAX_FINISHED_RUNS)]:
            del self._runs[rid]

    async def process_queue(self) -> None:
        """Drain the queue. Job failures are recorded, never raised."""
        async with self._drain_lock:
            self.state.is_processing = True
            running: set[asyncio.Task] = set()
            try:
                while True:
                    while len(running) < self.concurrency:
                        job = self._next_dispatchable()
                        if job is None:
                            break
                        await self._throttle()
                        if job not in self._queue:
                            # cleared or pruned while throttling
                            continue
                        self._queue.remove(job)
                        signal = asyncio.Event()
                        task = asyncio.create_task(self._run_job(job, signal), name=job.id)
                        self._in_flight[job.id] = _InFlight(job, signal, task)
                        running.add(task)
                        log.debug("Dispatched %s", job)
                    if not running:
                        break
                    _, pending = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    running = set(pending)
            finally:
                for t in running:
                    t.cancel()
                self.state.is_processing = False

    async def run_worker(self, stop: asyncio.Event) -> None:
        """Background loop: drain whenever something is enqueued, until `stop` is set."""
        log.info("Queue worker started (concurrency=%s)", self.concurrency)
        while not stop.is_set():
            wake_task = asyncio.create_task(self._wake.wait())
            halt_task = asyncio.create_task(stop.wait())
            done, pending = await asyncio.wait({wake_task, halt_task}, return_when=asyncio.FIRST_COMPLETED)
            for t in pending:
                t.cancel()
            if halt_task in done:
                break
            self._wake.clear()
            try:
                await self.process_queue()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Queue worker error; continuing")
        log.info("Queue worker stopped")
