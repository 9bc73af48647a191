from typing import Final
from enum import StrEnum


class OperationKind(StrEnum):
    APPROVAL = "approval"
    DEPOSIT  = "deposit"


class Phase(StrEnum):
    APPROVAL   = "approval"
    DEPOSIT    = "deposit"
    CONFIRMING = "confirming"


class ChainStatus(StrEnum):
    IDLE       = "idle"
    APPROVING  = "approving"
    DEPOSITING = "depositing"
    CONFIRMING = "confirming"
    COMPLETED  = "completed"
    FAILED     = "failed"


class ErrorKind(StrEnum):
    VALIDATION     = "ValidationError"
    CHAIN_SWITCH   = "ChainSwitchError"
    SIMULATION     = "SimulationError"
    USER_CANCELLED = "UserCancelledError"
    SUBMISSION     = "SubmissionError"
    REVERTED       = "RevertedError"
    CANCELLED      = "CancelledError"
    TIMEOUT        = "TimeoutError"
    CONFIRMATION   = "ConfirmationError"
    STATE          = "StateError"


class Step(StrEnum):
    SWITCHING  = "switching"
    APPROVING  = "approving"
    DEPOSITING = "depositing"


class ResultStatus(StrEnum):
    SUCCESS   = "success"
    FAILED    = "failed"
    CANCELLED = "cancelled"
    PARTIAL   = "partial"


class HistoryStatus(StrEnum):
    PENDING   = "pending"
    CONFIRMED = "confirmed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class ReceiptStatus(StrEnum):
    SUCCESS  = "success"
    REVERTED = "reverted"


# Priority order is (band + offset, insertion seq); a batch gives chain i the band i * PRIORITY_BAND.
# Within a pair the offset is the job's position, so a lone deposit takes APPROVAL_OFFSET
PRIORITY_BAND: Final = 10
APPROVAL_OFFSET: Final = 1
DEPOSIT_OFFSET: Final = 2

STEPS_PER_CHAIN: Final = 3
STEP_ORDER: Final = (Step.SWITCHING, Step.APPROVING, Step.DEPOSITING)

DEFAULT_CONCURRENCY = 1
DEFAULT_DISPATCH_INTERVAL = 0.1
PRESIGN_TIMEOUT = 60.0
CONFIRMATION_TIMEOUT = 300.0
SWITCH_TIMEOUT = 30.0
SWITCH_ATTEMPTS = 3
SIMULATION_ATTEMPTS = 2
CONFIRMATION_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0
RPC_TIMEOUT = 10.0
RECEIPT_POLL_INTERVAL = 2.0
HISTORY_LIMIT = 100
EVENT_QUEUE_SIZE = 1000

USER_REJECTION_CODE: Final = 4001
INSUFFICIENT_FUNDS_CODE: Final = -32000

MSG_OPERATION_CANCELLED: Final = "Operation cancelled"
MSG_USER_CANCELLED: Final = "Transaction cancelled by user"
MSG_REVERTED: Final = "Transaction reverted"
MSG_SWITCH_MISMATCH: Final = "Wallet did not switch chains"
MSG_ZERO_AMOUNT: Final = "Amount must be greater than 0"
MSG_PRESIGN_TIMEOUT: Final = "Timed out waiting for wallet signature"
MSG_CONFIRMATION_TIMEOUT: Final = "Timed out waiting for confirmation"
MSG_BATCH_RUNNING: Final = "Batch execution already in progress"
MSG_RETRY_WHILE_RUNNING: Final = "Cannot retry while chain has queued or in-flight work"
MSG_UNCONFIRMED: Final = "Chain has an unconfirmed transaction; resume its confirmation first"

__all__ = [
    "APPROVAL_OFFSET",
    "CONFIRMATION_ATTEMPTS",
    "CONFIRMATION_TIMEOUT",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_DISPATCH_INTERVAL",
    "DEPOSIT_OFFSET",
    "EVENT_QUEUE_SIZE",
    "HISTORY_LIMIT",
    "INSUFFICIENT_FUNDS_CODE",
    "PRESIGN_TIMEOUT",
    "PRIORITY_BAND",
    "RECEIPT_POLL_INTERVAL",
    "RETRY_BASE_DELAY",
    "RPC_TIMEOUT",
    "SIMULATION_ATTEMPTS",
    "STEPS_PER_CHAIN",
    "STEP_ORDER",
    "SWITCH_ATTEMPTS",
    "SWITCH_TIMEOUT",
    "USER_REJECTION_CODE",

    ######
    "ChainStatus",
    "ErrorKind",
    "HistoryStatus",
    "OperationKind",
    "Phase",
    "ReceiptStatus",
    "ResultStatus",
    "Step",
]
