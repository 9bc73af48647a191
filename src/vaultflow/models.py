import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from vaultflow.constants import (
    ChainStatus,
    ErrorKind,
    HistoryStatus,
    OperationKind,
    Phase,
    ReceiptStatus,
    ResultStatus,
)


@dataclass(slots=True)
class ChainOperation:
    """One queued unit of work: a single approval or deposit on one chain."""
    chain_id: int
    kind: OperationKind
    amount: str
    priority: int
    id: str
    run_id: str | None = None
    seq: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.seq)

    def same_work(self, chain_id: int, kind: OperationKind, amount: str) -> bool:
        return self.chain_id == chain_id and self.kind == kind and self.amount == amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "kind": str(self.kind),
            "amount": self.amount,
            "priority": self.priority,
            "run_id": self.run_id,
            "created_at": self.created_at,
        }

    def __str__(self):
        return f"{self.kind}-{self.chain_id} p={self.priority} amount={self.amount}"


@dataclass(slots=True)
class ChainOperationState:
    is_operating: bool = False
    phase: Phase | None = None
    pending_handle: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    is_user_cancellation: bool = False
    last_completed_phase: OperationKind | None = None
    last_error_at: float | None = None

    @property
    def status(self) -> ChainStatus:
        if self.phase == Phase.CONFIRMING:
            return ChainStatus.CONFIRMING
        if self.phase == Phase.APPROVAL:
            return ChainStatus.APPROVING
        if self.phase == Phase.DEPOSIT:
            return ChainStatus.DEPOSITING
        if self.error is not None:
            return ChainStatus.FAILED
        if self.last_completed_phase is not None:
            return ChainStatus.COMPLETED
        return ChainStatus.IDLE

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = str(self.status)
        return d


@dataclass(slots=True)
class ChainTransactions:
    """Durable per-chain record of submitted and confirmed handles."""
    approval_handle: str | None = None
    approval_confirmed_handle: str | None = None
    deposit_handle: str | None = None
    deposit_confirmed_handle: str | None = None
    last_approved_amount: str | None = None

    def submitted(self, kind: OperationKind) -> str | None:
        return self.approval_handle if kind == OperationKind.APPROVAL else self.deposit_handle

    def confirmed(self, kind: OperationKind) -> str | None:
        if kind == OperationKind.APPROVAL:
            return self.approval_confirmed_handle
        return self.deposit_confirmed_handle

    def pending_handle(self, kind: OperationKind) -> str | None:
        h = self.submitted(kind)
        if h is not None and h != self.confirmed(kind):
            return h
        return None

    @property
    def approval_pending(self) -> bool:
        return self.pending_handle(OperationKind.APPROVAL) is not None

    @property
    def deposit_pending(self) -> bool:
        return self.pending_handle(OperationKind.DEPOSIT) is not None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def approved_units(self) -> int:
        try:
            return int(self.last_approved_amount) if self.last_approved_amount is not None else 0
        except ValueError:
            return 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ChainTransactions":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass(frozen=True, slots=True)
class Receipt:
    handle: str
    status: ReceiptStatus
    block_number: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == ReceiptStatus.SUCCESS


@dataclass(slots=True)
class ChainResult:
    chain_id: int
    status: ResultStatus
    approval_handle: str | None = None
    deposit_handle: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    user_cancelled: bool = False
    error_category: str | None = None
    user_message: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    can_retry: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class HistoryEntry:
    tx_hash: str
    chain_id: int
    kind: OperationKind
    status: HistoryStatus
    amount: str
    timestamp: float = field(default_factory=time.time)
    error: str | None = None

    @property
    def id(self) -> str:
        return f"{self.chain_id}:{self.tx_hash}"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["id"] = self.id
        return d


@dataclass(slots=True)
class OperationsState:
    """Aggregate root for everything the orchestrator tracks that is not persisted."""
    chains: dict[int, ChainOperationState] = field(default_factory=dict)
    in_flight: dict[int, str] = field(default_factory=dict)  # chain_id -> job id
    active_chain_id: int | None = None
    is_processing: bool = False

    def chain(self, chain_id: int) -> ChainOperationState:
        return self.chains.setdefault(chain_id, ChainOperationState())

    @property
    def in_flight_chain_id(self) -> int | None:
        # most recently dispatched; the only one under concurrency 1
        return next(reversed(self.in_flight), None)

    def is_any_chain_operating(self) -> bool:
        return any(s.is_operating for s in self.chains.values())
