import logging

from vaultflow.constants import OperationKind
from vaultflow.ledger import TransactionLedger
from vaultflow.state_machine import ChainStateMachine

log = logging.getLogger("vaultflow.reconcile")


def reconcile(ledger: TransactionLedger, machine: ChainStateMachine) -> dict[int, str]:
    """Restore "confirming" state for every chain with an unconfirmed handle.

    Runs once at startup, before any job is dispatched. Nothing is submitted:
    the caller decides when to resume the wait on each returned handle.
    Returns chain_id -> restored handle.
    """
    restored = {}
    for chain_id, rec in sorted(ledger.snapshot().items()):
        approval = rec.pending_handle(OperationKind.APPROVAL)
        deposit = rec.pending_handle(OperationKind.DEPOSIT)
        if approval and deposit:
            # sequencing never leaves both open; keep the approval and flag it
            log.warning(
                "Chain %s has both an unconfirmed approval (%s) and deposit (%s); resuming the approval",
                chain_id, approval, deposit,
            )
        handle = approval or deposit
        if handle is None:
            continue
        machine.restore_confirming(chain_id, handle)
        restored[chain_id] = handle
        log.info(
            "Chain %s restored to confirming on %s %s",
            chain_id, "approval" if approval else "deposit", handle,
        )
    if not restored:
        log.debug("Nothing to reconcile")
    return restored
