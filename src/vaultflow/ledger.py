"""Durable per-chain transaction ledger.

The ledger is the only state that survives a restart. Every handle write is
followed by a full ``save()`` through the persistence backend so a crash
between submission and confirmation can be recovered by reconciliation.
"""

import copy
import logging
from collections import deque
from typing import Protocol

import vaultflow.constants as C
from vaultflow.constants import HistoryStatus, OperationKind
from vaultflow.models import ChainTransactions, HistoryEntry

log = logging.getLogger("vaultflow.ledger")


class LedgerStore(Protocol):
    def load(self) -> dict[int, ChainTransactions]: ...
    def save(self, txs: dict[int, ChainTransactions]) -> None: ...
    def add_history(self, entry: HistoryEntry) -> None: ...
    def list_history(self, limit: int = C.HISTORY_LIMIT) -> list[HistoryEntry]: ...
    def clear_history(self) -> None: ...


class InMemoryLedgerStore:
    """Process-local backend. Keeps deep copies so callers can't mutate what was saved."""

    def __init__(self, initial: dict[int, ChainTransactions] | None = None) -> None:
        self._saved: dict[int, ChainTransactions] = copy.deepcopy(initial or {})
        self._history: deque[HistoryEntry] = deque(maxlen=C.HISTORY_LIMIT)
        self.save_count = 0

    def load(self) -> dict[int, ChainTransactions]:
        return copy.deepcopy(self._saved)

    def save(self, txs: dict[int, ChainTransactions]) -> None:
        self._saved = copy.deepcopy(txs)
        self.save_count += 1

    def add_history(self, entry: HistoryEntry) -> None:
        for i, e in enumerate(self._history):
            if e.tx_hash == entry.tx_hash and e.chain_id == entry.chain_id:
                entry.timestamp = e.timestamp
                self._history[i] = entry
                return
        self._history.appendleft(entry)

    def list_history(self, limit: int = C.HISTORY_LIMIT) -> list[HistoryEntry]:
        return list(self._history)[:limit]

    def clear_history(self) -> None:
        self._history.clear()


class TransactionLedger:
    def __init__(self, store: LedgerStore | None = None) -> None:
        self.store = store if store is not None else InMemoryLedgerStore()
        self._txs: dict[int, ChainTransactions] = self.store.load()
        log.debug("Ledger loaded %s chain record(s)", len(self._txs))

    def _persist(self) -> None:
        self.store.save(self.snapshot())

    def _record(self, chain_id: int) -> ChainTransactions:
        return self._txs.setdefault(chain_id, ChainTransactions())

    def get(self, chain_id: int) -> ChainTransactions:
        return copy.copy(self._txs.get(chain_id) or ChainTransactions())

    def snapshot(self) -> dict[int, ChainTransactions]:
        return {cid: copy.copy(rec) for cid, rec in self._txs.items()}

    def record_submitted(self, chain_id: int, kind: OperationKind, handle: str) -> None:
        rec = self._record(chain_id)
        if kind == OperationKind.APPROVAL:
            rec.approval_handle = handle
        else:
            rec.deposit_handle = handle
        self._persist()
        log.debug("chain %s %s submitted %s", chain_id, kind, handle)

    def record_confirmed(self, chain_id: int, kind: OperationKind, handle: str) -> None:
        rec = self._record(chain_id)
        if kind == OperationKind.APPROVAL:
            rec.approval_handle = handle
            rec.approval_confirmed_handle = handle
        else:
            rec.deposit_handle = handle
            rec.deposit_confirmed_handle = handle
        self._persist()
        log.debug("chain %s %s confirmed %s", chain_id, kind, handle)

    def clear_submitted(self, chain_id: int, kind: OperationKind) -> None:
        """Drop the unconfirmed handle for `kind`. Confirmed handles are untouched."""
        rec = self._txs.get(chain_id)
        if rec is None:
            return
        if kind == OperationKind.APPROVAL:
            # fall back to the last confirmed approval, if any
            rec.approval_handle = rec.approval_confirmed_handle
        else:
            rec.deposit_handle = rec.deposit_confirmed_handle
        self._persist()
        log.debug("chain %s %s unconfirmed handle cleared", chain_id, kind)

    def set_last_approved_amount(self, chain_id: int, units: int | str) -> None:
        self._record(chain_id).last_approved_amount = str(units)
        self._persist()

    def invalidate(self, chain_id: int | None = None) -> None:
        """Forget everything recorded for one chain, or for all chains."""
        if chain_id is None:
            self._txs.clear()
        else:
            self._txs.pop(chain_id, None)
        self._persist()
        log.info("Ledger invalidated for %s", "all chains" if chain_id is None else f"chain {chain_id}")

    def pending(self) -> dict[int, dict[str, str | None]]:
        out = {}
        for cid, rec in self._txs.items():
            a = rec.pending_handle(OperationKind.APPROVAL)
            d = rec.pending_handle(OperationKind.DEPOSIT)
            if a or d:
                out[cid] = {"approval": a, "deposit": d}
        return out

    def has_pending(self, chain_id: int | None = None) -> bool:
        p = self.pending()
        return bool(p) if chain_id is None else chain_id in p

    def approved_not_deposited(self) -> list[int]:
        return [
            cid for cid, rec in self._txs.items()
            if rec.approval_confirmed_handle and not rec.deposit_handle and not rec.deposit_confirmed_handle
        ]

    # =========================================================================
    # History
    # =========================================================================

    def add_history(
        self,
        chain_id: int,
        kind: OperationKind,
        tx_hash: str,
        amount: str,
        status: HistoryStatus,
        error: str | None = None,
    ) -> None:
        self.store.add_history(
            HistoryEntry(tx_hash=tx_hash, chain_id=chain_id, kind=kind, status=status, amount=amount, error=error)
        )

    def history(self, limit: int = C.HISTORY_LIMIT) -> list[HistoryEntry]:
        return self.store.list_history(limit)

    def clear_history(self) -> None:
        self.store.clear_history()
