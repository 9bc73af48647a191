"""Per-chain operation state machine.

    idle -> approving|depositing -> confirming -> completed|failed

One job drives one chain through the transitions below. Only the methods of
``ChainStateMachine`` mutate ``ChainOperationState``; everything else reads.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import Any, Protocol

import vaultflow.constants as C
from vaultflow.amounts import format_units, is_address, parse_amount
from vaultflow.config import ChainConfig, Settings
from vaultflow.constants import HistoryStatus, OperationKind, Phase, Step
from vaultflow.errors import (
    ChainSwitchError,
    ConfirmationError,
    JobCancelledError,
    JobTimeoutError,
    OrchestratorError,
    RevertedError,
    SimulationError,
    StateError,
    SubmissionError,
    UserCancelledError,
    ValidationError,
    is_user_rejection,
    with_retry,
)
from vaultflow.ledger import TransactionLedger
from vaultflow.models import ChainOperation, ChainOperationState, OperationsState, Receipt
from vaultflow.wallet import WalletAdapter

log = logging.getLogger("vaultflow.state_machine")


class StepReporter(Protocol):
    def step_started(self, chain_id: int, step: Step) -> None: ...
    def step_completed(self, chain_id: int, step: Step, *, handle: str | None = None) -> None: ...


class _NullReporter:
    def step_started(self, chain_id: int, step: Step) -> None:
        pass

    def step_completed(self, chain_id: int, step: Step, *, handle: str | None = None) -> None:
        pass


def _call_for(kind: OperationKind, chain: ChainConfig, units: int) -> tuple[str, str, list[Any]]:
    if kind == OperationKind.APPROVAL:
        return chain.token, "approve", [chain.vault, units]
    return chain.vault, "deposit", [chain.token, units]


def _step_for(kind: OperationKind) -> Step:
    return Step.APPROVING if kind == OperationKind.APPROVAL else Step.DEPOSITING


def _retry_transient(e: BaseException) -> bool:
    if isinstance(e, OrchestratorError):
        return e.retryable
    return not is_user_rejection(e)


async def abortable(aw: Awaitable, signal: asyncio.Event | None, *, chain_id: int | None = None) -> Any:
    """Await `aw` unless `signal` fires first, in which case raise JobCancelledError."""
    if signal is None:
        return await aw
    if signal.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise JobCancelledError(chain_id=chain_id)

    work = asyncio.ensure_future(aw)
    halt = asyncio.create_task(signal.wait())
    try:
        done, _ = await asyncio.wait({work, halt}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (work, halt):
            if not t.done():
                t.cancel()
    if work in done:
        return work.result()
    raise JobCancelledError(chain_id=chain_id)


class ChainStateMachine:
    def __init__(
        self,
        settings: Settings,
        wallet: WalletAdapter,
        ledger: TransactionLedger,
        state: OperationsState,
    ) -> None:
        self.settings = settings
        self.wallet = wallet
        self.ledger = ledger
        self.state = state
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, chain_id: int) -> asyncio.Lock:
        return self._locks.setdefault(chain_id, asyncio.Lock())

    def is_locked(self, chain_id: int) -> bool:
        lock = self._locks.get(chain_id)
        return lock is not None and lock.locked()

    # =========================================================================
    # Transitions
    # =========================================================================

    def _enter_phase(self, chain_id: int, kind: OperationKind) -> None:
        s = self.state.chain(chain_id)
        s.is_operating = True
        s.phase = Phase.APPROVAL if kind == OperationKind.APPROVAL else Phase.DEPOSIT
        s.pending_handle = None
        s.error = None
        s.error_kind = None
        s.is_user_cancellation = False
        s.last_error_at = None

    def _to_confirming(self, chain_id: int, handle: str) -> None:
        s = self.state.chain(chain_id)
        s.is_operating = True
        s.phase = Phase.CONFIRMING
        s.pending_handle = handle

    def _complete(self, chain_id: int, kind: OperationKind) -> None:
        s = self.state.chain(chain_id)
        s.is_operating = False
        s.phase = None
        s.pending_handle = None
        s.last_completed_phase = kind

    def _fail(self, chain_id: int, err: OrchestratorError) -> None:
        s = self.state.chain(chain_id)
        s.is_operating = False
        s.phase = None
        s.error = err.message
        s.error_kind = err.kind
        s.is_user_cancellation = err.is_user_cancellation
        s.last_error_at = time.time()
        # a resumable confirmation keeps its handle visible
        if not self.ledger.has_pending(chain_id):
            s.pending_handle = None

    def restore_confirming(self, chain_id: int, handle: str) -> None:
        self.state.chains[chain_id] = ChainOperationState(is_operating=True, phase=Phase.CONFIRMING, pending_handle=handle)

    def clear_error(self, chain_id: int) -> None:
        s = self.state.chains.get(chain_id)
        if s is None or s.is_operating:
            return
        s.error = None
        s.error_kind = None
        s.is_user_cancellation = False
        s.last_error_at = None
        s.pending_handle = None

    def clear_all_errors(self) -> None:
        for chain_id in list(self.state.chains):
            self.clear_error(chain_id)

    # =========================================================================
    # Job execution
    # =========================================================================

    async def execute(
        self,
        op: ChainOperation,
        *,
        signal: asyncio.Event | None = None,
        reporter: StepReporter | None = None,
    ) -> str:
        """Run one job to a terminal state. Returns the confirmed handle.

        Raises an OrchestratorError subclass on every failure path, after the
        failure has been recorded on the chain's state.
        """
        reporter = reporter or _NullReporter()
        async with self._lock_for(op.chain_id):
            self.state.in_flight[op.chain_id] = op.id
            try:
                return await self._run(op, signal, reporter)
            except OrchestratorError as e:
                e.chain_id = op.chain_id
                self._fail(op.chain_id, e)
                log.warning("%s failed: %s: %s", op, e.kind, e.message)
                raise
            except asyncio.CancelledError:
                self._fail(op.chain_id, JobCancelledError(chain_id=op.chain_id))
                raise
            except Exception as e:
                err = OrchestratorError(str(e) or e.__class__.__name__, chain_id=op.chain_id)
                self._fail(op.chain_id, err)
                log.exception("%s failed unexpectedly", op)
                raise err from e
            finally:
                self.state.in_flight.pop(op.chain_id, None)

    async def _run(self, op: ChainOperation, signal: asyncio.Event | None, reporter: StepReporter) -> str:
        cid = op.chain_id

        # 1. validate, no wallet interaction on failure
        chain = self.settings.chain(cid)
        if chain is None:
            raise ValidationError(f"Unsupported chain: {cid}", chain_id=cid)
        if not is_address(chain.token) or not is_address(chain.vault):
            raise ValidationError(f"Contract addresses not configured for {chain.name}", chain_id=cid)
        units = parse_amount(op.amount, chain.decimals, chain_id=cid)
        pending = self.ledger.get(cid).pending_handle(op.kind)
        if pending is not None:
            raise StateError(f"{C.MSG_UNCONFIRMED} ({op.kind} {pending})", chain_id=cid)

        # 2. network switch
        reporter.step_started(cid, Step.SWITCHING)
        await self._switch(chain, signal)
        reporter.step_completed(cid, Step.SWITCHING)

        # 3. enter phase
        step = _step_for(op.kind)
        self._enter_phase(cid, op.kind)
        reporter.step_started(cid, step)
        log.info("%s on %s: %s", op.kind, chain.name, op.amount)

        contract, fn, args = _call_for(op.kind, chain, units)

        # 4. preflight simulation
        try:
            await with_retry(
                lambda: abortable(self.wallet.simulate(cid, contract, fn, args), signal, chain_id=cid),
                attempts=self.settings.simulation_attempts,
                base_delay=self.settings.retry_base_delay,
                retry_on=_retry_transient,
                label=f"simulate {fn} on {chain.name}",
            )
        except JobCancelledError:
            raise
        except Exception as e:
            raise SimulationError(str(e) or e.__class__.__name__, chain_id=cid) from e

        # 5. submit, the handle is persisted before anything is awaited on it
        handle = await self._submit(cid, contract, fn, args, signal)
        self.ledger.record_submitted(cid, op.kind, handle)
        self.ledger.add_history(cid, op.kind, handle, op.amount, HistoryStatus.PENDING)
        self._to_confirming(cid, handle)
        log.info("%s submitted on %s: %s", op.kind, chain.name, chain.tx_url(handle) or handle)

        # 6. confirmation
        await self._confirm(cid, op.kind, handle, signal, units=units, amount=op.amount)
        reporter.step_completed(cid, step, handle=handle)
        return handle

    async def _switch(self, chain: ChainConfig, signal: asyncio.Event | None) -> None:
        cid = chain.id
        if self.state.active_chain_id == cid:
            return

        async def _attempt() -> int:
            async with asyncio.timeout(self.settings.switch_timeout):
                active = await abortable(self.wallet.switch_chain(cid), signal, chain_id=cid)
            if active != cid:
                raise ChainSwitchError(f"{C.MSG_SWITCH_MISMATCH} (wanted {cid}, wallet on {active})", chain_id=cid)
            return active

        try:
            self.state.active_chain_id = await with_retry(
                _attempt,
                attempts=self.settings.switch_attempts,
                base_delay=self.settings.retry_base_delay,
                retry_on=_retry_transient,
                label=f"switch to {chain.name}",
            )
        except (JobCancelledError, ChainSwitchError):
            self.state.active_chain_id = None
            raise
        except Exception as e:
            self.state.active_chain_id = None
            raise ChainSwitchError(f"Failed to switch to {chain.name}: {e}", chain_id=cid) from e

    async def _submit(
        self, cid: int, contract: str, fn: str, args: list[Any], signal: asyncio.Event | None
    ) -> str:
        try:
            async with asyncio.timeout(self.settings.presign_timeout):
                return await abortable(self.wallet.submit(cid, contract, fn, args), signal, chain_id=cid)
        except JobCancelledError:
            raise
        except TimeoutError:
            # nobody signed, treat it as the user walking away
            raise JobTimeoutError(C.MSG_PRESIGN_TIMEOUT, chain_id=cid, is_user_cancellation=True) from None
        except Exception as e:
            if is_user_rejection(e):
                raise UserCancelledError(chain_id=cid) from e
            raise SubmissionError(f"Submit failed: {e}", chain_id=cid) from e

    async def _confirm(
        self,
        cid: int,
        kind: OperationKind,
        handle: str,
        signal: asyncio.Event | None,
        *,
        units: int | None,
        amount: str,
    ) -> Receipt:
        async def _wait() -> Receipt:
            async with asyncio.timeout(self.settings.confirmation_timeout):
                return await abortable(
                    self.wallet.wait_for_confirmation(cid, handle, signal=signal), signal, chain_id=cid
                )

        try:
            receipt = await with_retry(
                _wait,
                attempts=self.settings.confirmation_attempts,
                base_delay=self.settings.retry_base_delay,
                retry_on=lambda e: _retry_transient(e) and not isinstance(e, TimeoutError),
                label=f"confirmation of {handle}",
            )
        except JobCancelledError:
            self.ledger.clear_submitted(cid, kind)
            self.ledger.add_history(cid, kind, handle, amount, HistoryStatus.CANCELLED, C.MSG_OPERATION_CANCELLED)
            raise
        except TimeoutError:
            # the transaction may still land, keep the handle so the wait can be resumed
            raise JobTimeoutError(C.MSG_CONFIRMATION_TIMEOUT, chain_id=cid, retryable=True) from None
        except Exception as e:
            raise ConfirmationError(f"Confirmation failed: {e}", chain_id=cid) from e

        if not receipt.ok:
            self.ledger.clear_submitted(cid, kind)
            self.ledger.add_history(cid, kind, handle, amount, HistoryStatus.FAILED, C.MSG_REVERTED)
            raise RevertedError(C.MSG_REVERTED, chain_id=cid)

        self.ledger.record_confirmed(cid, kind, handle)
        if kind == OperationKind.APPROVAL and units is not None:
            self.ledger.set_last_approved_amount(cid, units)
            chain = self.settings.chain(cid)
            if chain is not None:
                log.info("Allowance on %s now %s", chain.name, format_units(units, chain.decimals))
        self.ledger.add_history(cid, kind, handle, amount, HistoryStatus.CONFIRMED)
        self._complete(cid, kind)
        log.info("%s confirmed on chain %s: %s", kind, cid, handle)
        return receipt

    async def resume_confirmation(
        self,
        chain_id: int,
        *,
        signal: asyncio.Event | None = None,
        amount: str | None = None,
    ) -> str:
        """Re-attach a confirmation wait to a handle restored by reconciliation.

        Never submits. `amount`, when known, lets a confirmed approval record
        its allowance; without it the next deposit re-approves.
        """
        txs = self.ledger.get(chain_id)
        if txs.approval_pending:
            kind = OperationKind.APPROVAL
        elif txs.deposit_pending:
            kind = OperationKind.DEPOSIT
        else:
            raise StateError(f"No unconfirmed transaction to resume on chain {chain_id}", chain_id=chain_id)
        handle = txs.pending_handle(kind)

        units = None
        chain = self.settings.chain(chain_id)
        if amount is not None and chain is not None:
            units = parse_amount(amount, chain.decimals, chain_id=chain_id)

        async with self._lock_for(chain_id):
            self.state.in_flight[chain_id] = f"resume-{chain_id}"
            self._to_confirming(chain_id, handle)
            try:
                await self._confirm(chain_id, kind, handle, signal, units=units, amount=amount or "")
                return handle
            except OrchestratorError as e:
                self._fail(chain_id, e)
                raise
            except asyncio.CancelledError:
                self._fail(chain_id, JobCancelledError(chain_id=chain_id))
                raise
            finally:
                self.state.in_flight.pop(chain_id, None)
