"""Error taxonomy for chain operations.

Every failure a job can hit is an OrchestratorError subclass carrying its
ErrorKind, so the scheduler can record it on the chain state and decide on
pruning without inspecting messages.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

import vaultflow.constants as C
from vaultflow.constants import ErrorKind

log = logging.getLogger("vaultflow.errors")

T = TypeVar("T")


class OrchestratorError(Exception):
    kind: ErrorKind = ErrorKind.STATE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        chain_id: int | None = None,
        is_user_cancellation: bool = False,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.chain_id = chain_id
        self.is_user_cancellation = is_user_cancellation
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "chain_id": self.chain_id,
            "is_user_cancellation": self.is_user_cancellation,
            "retryable": self.retryable,
        }


class ValidationError(OrchestratorError):
    kind = ErrorKind.VALIDATION


class ChainSwitchError(OrchestratorError):
    kind = ErrorKind.CHAIN_SWITCH
    retryable = True


class SimulationError(OrchestratorError):
    kind = ErrorKind.SIMULATION
    retryable = True


class UserCancelledError(OrchestratorError):
    kind = ErrorKind.USER_CANCELLED

    def __init__(self, message: str = C.MSG_USER_CANCELLED, **kw) -> None:
        kw.setdefault("is_user_cancellation", True)
        super().__init__(message, **kw)


class SubmissionError(OrchestratorError):
    """Submit failed for a reason other than the user declining.

    Never retried: the transaction may already have been broadcast.
    """
    kind = ErrorKind.SUBMISSION


class RevertedError(OrchestratorError):
    kind = ErrorKind.REVERTED


class JobCancelledError(OrchestratorError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = C.MSG_OPERATION_CANCELLED, **kw) -> None:
        kw.setdefault("is_user_cancellation", True)
        super().__init__(message, **kw)


class JobTimeoutError(OrchestratorError):
    kind = ErrorKind.TIMEOUT


class ConfirmationError(OrchestratorError):
    kind = ErrorKind.CONFIRMATION
    retryable = True


class StateError(OrchestratorError):
    kind = ErrorKind.STATE


class WalletRejectedError(Exception):
    """Raised by wallet adapters when the user declines a prompt (EIP-1193 code 4001)."""

    def __init__(self, message: str = "User rejected the request", code: int = C.USER_REJECTION_CODE) -> None:
        super().__init__(message)
        self.code = code


class WalletRPCError(Exception):
    """A wallet bridge answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


_REJECTION_MARKERS = ("user rejected", "user denied", "user cancelled", "rejected by user")


def is_user_rejection(exc: BaseException | None) -> bool:
    """True when an adapter error means the user declined, walking the cause chain."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (WalletRejectedError, UserCancelledError)):
            return True
        if getattr(exc, "code", None) == C.USER_REJECTION_CODE:
            return True
        msg = str(exc).lower()
        if any(m in msg for m in _REJECTION_MARKERS):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Map an arbitrary error to (category, user-facing message).

    Categories: user_rejection, insufficient_funds, network, transaction, unknown.
    """
    if is_user_rejection(exc):
        return "user_rejection", C.MSG_USER_CANCELLED
    msg = str(exc)
    low = msg.lower()
    if "insufficient funds" in low or "exceeds balance" in low or getattr(exc, "code", None) == C.INSUFFICIENT_FUNDS_CODE:
        return "insufficient_funds", "Insufficient funds for this transaction"
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)) or "network" in low or "timeout" in low:
        return "network", "Network error, please check your connection and try again"
    if isinstance(exc, RevertedError) or "revert" in low or "execution" in low:
        return "transaction", msg or C.MSG_REVERTED
    return "unknown", msg or exc.__class__.__name__


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: Callable[[BaseException], bool] = lambda e: True,
    label: str = "call",
) -> T:
    """Await fn() up to `attempts` times with exponential backoff.

    Delay before attempt n+1 is base_delay * 2**(n-1). Errors for which
    `retry_on` is false are raised on the spot.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= attempts or not retry_on(e):
                raise
            delay = base_delay * 2 ** (attempt - 1)
            log.warning("%s failed (attempt %s/%s): %s - retrying in %.2fs", label, attempt, attempts, e, delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
