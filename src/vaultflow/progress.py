"""Step and progress bookkeeping for one enqueue call (a "run").

Each chain walks the three steps switching -> approving -> depositing. A
deposit job whose chain needed no approval reports the approving step as
skipped, and the second job of a pair does not repeat the switching step.
Batch runs add BatchStarted, ProgressUpdated and BatchCompleted around that.
"""

import logging
import time
from dataclasses import dataclass, field

import vaultflow.constants as C
from vaultflow.constants import OperationKind, ResultStatus, Step
from vaultflow.errors import OrchestratorError, ValidationError, classify_error
from vaultflow.events import (
    BatchCompleted,
    BatchStarted,
    ChainCompleted,
    ChainFailed,
    EventBus,
    ProgressUpdated,
    StepCompleted,
    StepStarted,
    progress_percentage,
)
from vaultflow.models import ChainResult

log = logging.getLogger("vaultflow.progress")


@dataclass(slots=True)
class _ChainProgress:
    index: int
    expected: set[OperationKind]
    started: set[Step] = field(default_factory=set)
    completed: set[Step] = field(default_factory=set)
    approval_confirmed: bool = False
    settled: bool = False
    result: ChainResult | None = None


class RunTracker:
    def __init__(self, run_id: str, bus: EventBus, *, batch: bool = False) -> None:
        self.run_id = run_id
        self.bus = bus
        self.batch = batch
        self.chains: dict[int, _ChainProgress] = {}
        self.completed_steps = 0
        self.started_at = time.time()
        self.finished = False

    # =========================================================================
    # Setup
    # =========================================================================

    def add_chain(self, chain_id: int, kinds: set[OperationKind]) -> None:
        if chain_id in self.chains:
            self.chains[chain_id].expected |= kinds
            return
        self.chains[chain_id] = _ChainProgress(index=len(self.chains), expected=set(kinds))
        self.chains[chain_id].result = ChainResult(chain_id=chain_id, status=ResultStatus.PARTIAL)

    def start(self) -> None:
        # chains that got no job of their own (all de-duplicated) have nothing to report
        self.chains = {cid: p for cid, p in self.chains.items() if p.expected}
        for i, p in enumerate(self.chains.values()):
            p.index = i
        if self.batch:
            self.bus.emit(BatchStarted(chain_count=len(self.chains), total_steps=self.total_steps, run_id=self.run_id))
            self._progress()
        if not self.chains:
            self.finished = True

    @property
    def total_steps(self) -> int:
        return len(self.chains) * C.STEPS_PER_CHAIN

    # =========================================================================
    # Step reporting (called by the state machine)
    # =========================================================================

    def _numbers(self, p: _ChainProgress, step: Step) -> tuple[int, int, int]:
        chain_step = C.STEP_ORDER.index(step) + 1
        if self.batch:
            return p.index * C.STEPS_PER_CHAIN + chain_step, self.total_steps, chain_step
        return chain_step, C.STEPS_PER_CHAIN, chain_step

    def _emit_started(self, chain_id: int, p: _ChainProgress, step: Step) -> None:
        n, total, cs = self._numbers(p, step)
        p.started.add(step)
        self.bus.emit(StepStarted(
            chain_id=chain_id, step=step, step_number=n, total_steps=total, chain_step=cs, run_id=self.run_id,
        ))

    def _emit_completed(
        self, chain_id: int, p: _ChainProgress, step: Step, *, skipped: bool = False, handle: str | None = None
    ) -> None:
        n, total, cs = self._numbers(p, step)
        p.completed.add(step)
        self.completed_steps += 1
        self.bus.emit(StepCompleted(
            chain_id=chain_id, step=step, step_number=n, total_steps=total, chain_step=cs,
            skipped=skipped, handle=handle, run_id=self.run_id,
        ))
        self._progress()

    def step_started(self, chain_id: int, step: Step) -> None:
        p = self.chains.get(chain_id)
        if p is None or p.settled or step in p.completed:
            return
        # earlier steps this run never performed are reported as skipped
        for earlier in C.STEP_ORDER[: C.STEP_ORDER.index(step)]:
            if earlier not in p.completed:
                self._emit_started(chain_id, p, earlier)
                self._emit_completed(chain_id, p, earlier, skipped=True)
        self._emit_started(chain_id, p, step)

    def step_completed(self, chain_id: int, step: Step, *, handle: str | None = None) -> None:
        p = self.chains.get(chain_id)
        if p is None or p.settled or step in p.completed or step not in p.started:
            return
        if step == Step.APPROVING:
            p.approval_confirmed = True
            p.result.approval_handle = handle
        elif step == Step.DEPOSITING:
            p.result.deposit_handle = handle
        self._emit_completed(chain_id, p, step, handle=handle)

    def _progress(self) -> None:
        if not self.batch:
            return
        total = self.total_steps
        self.bus.emit(ProgressUpdated(
            completed=self.completed_steps,
            total=total,
            percentage=progress_percentage(self.completed_steps, total),
            run_id=self.run_id,
        ))

    # =========================================================================
    # Settlement (called by the scheduler)
    # =========================================================================

    def job_succeeded(self, chain_id: int, kind: OperationKind) -> None:
        p = self.chains.get(chain_id)
        if p is None or p.settled:
            return
        p.expected.discard(kind)
        if p.expected:
            return
        p.result.status = ResultStatus.SUCCESS
        self._settle(chain_id, p)
        self.bus.emit(ChainCompleted(chain_id=chain_id, result=p.result, run_id=self.run_id))
        self._maybe_finish()

    def job_failed(self, chain_id: int, err: OrchestratorError) -> None:
        p = self.chains.get(chain_id)
        if p is None or p.settled:
            return
        r = p.result
        r.error = err.message
        r.error_kind = err.kind
        r.user_cancelled = err.is_user_cancellation
        r.error_category, r.user_message = classify_error(err.__cause__ or err)
        if err.is_user_cancellation:
            r.status = ResultStatus.PARTIAL if p.approval_confirmed else ResultStatus.CANCELLED
        else:
            r.status = ResultStatus.FAILED
        # the same input fails validation again
        r.can_retry = not isinstance(err, ValidationError)
        self._settle(chain_id, p)
        self.bus.emit(ChainFailed(chain_id=chain_id, error=err.message, result=r, run_id=self.run_id))
        self._maybe_finish()

    def _settle(self, chain_id: int, p: _ChainProgress) -> None:
        p.settled = True
        p.result.completed_at = time.time()
        # steps that will never run still count so the batch ends at 100%
        remaining = C.STEPS_PER_CHAIN - len(p.completed)
        if remaining > 0:
            self.completed_steps += remaining
            p.completed.update(C.STEP_ORDER)
            self._progress()
        log.debug("run %s chain %s settled: %s", self.run_id, chain_id, p.result.status)

    def _maybe_finish(self) -> None:
        if self.finished or not all(p.settled for p in self.chains.values()):
            return
        self.finished = True
        if self.batch:
            self.bus.emit(BatchCompleted(results=self.results(), run_id=self.run_id))

    def results(self) -> list[ChainResult]:
        return [p.result for p in self.chains.values()]
