import asyncio
import copy
import logging
from collections.abc import Iterable
from typing import Any

import vaultflow.constants as C
from vaultflow.config import Settings
from vaultflow.errors import OrchestratorError, StateError
from vaultflow.events import EventBus
from vaultflow.ledger import InMemoryLedgerStore, LedgerStore, TransactionLedger
from vaultflow.models import ChainOperation, ChainOperationState, ChainResult, ChainTransactions, HistoryEntry, OperationsState
from vaultflow.reconcile import reconcile
from vaultflow.scheduler import OperationQueue
from vaultflow.state_machine import ChainStateMachine
from vaultflow.wallet import WalletAdapter

log = logging.getLogger("vaultflow.orchestrator")


class Orchestrator:
    """Owns the operations state and exposes the queue management surface.

    One instance per wallet session. Nothing here is module-global, so tests
    and the API can build as many as they like.
    """

    def __init__(
        self,
        settings: Settings,
        wallet: WalletAdapter,
        *,
        store: LedgerStore | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.settings = settings
        self.wallet = wallet
        self.bus = bus or EventBus()
        self.state = OperationsState()
        self.ledger = TransactionLedger(store if store is not None else InMemoryLedgerStore())
        self.machine = ChainStateMachine(settings, wallet, self.ledger, self.state)
        self.queue = OperationQueue(settings, self.ledger, self.machine, self.state, self.bus)
        self._resume_signals: dict[int, asyncio.Event] = {}

    # =========================================================================
    # Queue management
    # =========================================================================

    def enqueue(self, op: ChainOperation) -> ChainOperation:
        return self.queue.enqueue(op)

    def enqueue_approval(self, chain_id: int, amount: str) -> ChainOperation:
        return self.queue.enqueue_approval(chain_id, amount)

    def enqueue_deposit(self, chain_id: int, amount: str) -> ChainOperation:
        return self.queue.enqueue_deposit(chain_id, amount)

    def enqueue_approval_and_deposit(self, chain_id: int, amount: str) -> list[ChainOperation]:
        return self.queue.enqueue_approval_and_deposit(chain_id, amount)

    def enqueue_batch(self, intents: Iterable[tuple[int, str]]) -> tuple[str, list[ChainOperation]]:
        return self.queue.enqueue_batch(intents)

    def clear_queue(self) -> int:
        return self.queue.clear_queue()

    def cancel(self) -> int:
        for signal in self._resume_signals.values():
            signal.set()
        return self.queue.cancel()

    async def process_queue(self) -> None:
        await self.queue.process_queue()

    async def run_worker(self, stop: asyncio.Event) -> None:
        await self.queue.run_worker(stop)

    # =========================================================================
    # Batch and recovery
    # =========================================================================

    async def execute_batch(self, intents: Iterable[tuple[int, str]]) -> list[ChainResult]:
        """Queue a batch, drain the queue, and return one result per chain."""
        run_id, _ = self.queue.enqueue_batch(intents)
        await self.queue.process_queue()
        return self.queue.run_results(run_id)

    def enqueue_retry(self, chain_id: int, amount: str) -> list[ChainOperation]:
        """Re-queue what is left for a chain: the deposit alone when the confirmed allowance covers `amount`."""
        if self.queue.has_work(chain_id):
            raise StateError(C.MSG_RETRY_WHILE_RUNNING, chain_id=chain_id)
        if self.ledger.has_pending(chain_id):
            raise StateError(f"{C.MSG_UNCONFIRMED} (chain {chain_id})", chain_id=chain_id)
        self.machine.clear_error(chain_id)
        jobs = self.queue.enqueue_approval_and_deposit(chain_id, amount)
        log.info("Retry chain %s: %s", chain_id, ", ".join(str(j.kind) for j in jobs))
        return jobs

    async def retry_chain(self, chain_id: int, amount: str) -> ChainResult | None:
        jobs = self.enqueue_retry(chain_id, amount)
        await self.queue.process_queue()
        results = self.queue.run_results(jobs[-1].run_id)
        return results[0] if results else None

    def reconcile(self) -> dict[int, str]:
        return reconcile(self.ledger, self.machine)

    async def resume_confirmation(self, chain_id: int, amount: str | None = None) -> str:
        if self.queue.has_work(chain_id):
            raise StateError(f"Chain {chain_id} already has queued or in-flight work", chain_id=chain_id)
        signal = self._resume_signals[chain_id] = asyncio.Event()
        try:
            return await self.machine.resume_confirmation(chain_id, signal=signal, amount=amount)
        finally:
            self._resume_signals.pop(chain_id, None)

    async def resume_all(self) -> dict[int, str | None]:
        """Resume every restored confirmation, one chain at a time."""
        out = {}
        for chain_id in list(self.ledger.pending()):
            try:
                out[chain_id] = await self.resume_confirmation(chain_id)
            except OrchestratorError as e:
                log.warning("Resume on chain %s ended with %s", chain_id, e)
                out[chain_id] = None
        return out

    def invalidate_chain(self, chain_id: int | None = None) -> None:
        if chain_id is not None and self.queue.has_work(chain_id):
            raise StateError(f"Chain {chain_id} has queued or in-flight work", chain_id=chain_id)
        self.ledger.invalidate(chain_id)

    def clear_error(self, chain_id: int) -> None:
        self.machine.clear_error(chain_id)

    def clear_all_errors(self) -> None:
        self.machine.clear_all_errors()

    # =========================================================================
    # Read accessors
    # =========================================================================

    def get_chain_state(self, chain_id: int) -> ChainOperationState:
        return copy.copy(self.state.chains.get(chain_id) or ChainOperationState())

    def get_chain_transactions(self, chain_id: int) -> ChainTransactions:
        return self.ledger.get(chain_id)

    def is_chain_operating(self, chain_id: int) -> bool:
        s = self.state.chains.get(chain_id)
        return bool(s and s.is_operating)

    def is_any_chain_operating(self) -> bool:
        return self.state.is_any_chain_operating()

    def queue_snapshot(self) -> list[ChainOperation]:
        return self.queue.snapshot()

    def pending_transactions(self) -> dict[int, dict[str, str | None]]:
        return self.ledger.pending()

    def approved_not_deposited(self) -> list[int]:
        return self.ledger.approved_not_deposited()

    def history(self, limit: int = C.HISTORY_LIMIT) -> list[HistoryEntry]:
        return self.ledger.history(limit)

    def summary(self) -> dict[str, Any]:
        return {
            "is_processing": self.state.is_processing,
            "in_flight_chain_id": self.state.in_flight_chain_id,
            "active_chain_id": self.state.active_chain_id,
            "is_any_chain_operating": self.is_any_chain_operating(),
            "queued": [j.to_dict() for j in self.queue.snapshot()],
            "in_flight": [j.to_dict() for j in self.queue.in_flight()],
            "chains": {
                cid: {
                    "name": cfg.name,
                    "state": self.get_chain_state(cid).to_dict(),
                    "transactions": self.get_chain_transactions(cid).to_dict(),
                }
                for cid, cfg in self.settings.chains.items()
            },
        }
