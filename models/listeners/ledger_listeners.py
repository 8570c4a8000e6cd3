# models/listeners/ledger_listeners.py
"""
Ledger Event Listeners - keep the commission ledger append-only.

Architecture:
    CommissionLineItem  UPDATE/DELETE → LedgerMutationError
    PaymentObligation   DELETE        → LedgerMutationError
    PaymentObligation   amount/dueDate/lineItemID UPDATE → LedgerMutationError

Status transitions on obligations (scheduled → paid / cancelled) stay allowed,
they are driven by payroll and operators.
"""
import logging

from sqlalchemy import event, inspect

from mlm_system.errors import LedgerMutationError

logger = logging.getLogger(__name__)

# Columns of an obligation that are fixed once scheduled
FROZEN_OBLIGATION_COLUMNS = ("lineItemID", "beneficiaryID", "commissionType", "amount", "dueDate")


def _changed_columns(target) -> list:
    """Names of column attributes with pending changes (relationships ignored)."""
    state = inspect(target)
    return [
        attr.key for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]


def register_line_item_protection():
    """
    Forbid UPDATE and DELETE on CommissionLineItem.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.commission import CommissionLineItem

    def forbid_line_item_update(mapper, connection, target):
        changed = [c for c in _changed_columns(target) if c != "updatedAt"]
        if not changed:
            return

        logger.error(
            f"Attempt to modify line item {target.lineItemID} "
            f"(columns: {', '.join(changed)})"
        )
        raise LedgerMutationError(
            f"CommissionLineItem {target.lineItemID} is append-only, "
            f"cannot modify {', '.join(changed)}"
        )

    def forbid_line_item_delete(mapper, connection, target):
        logger.error(f"Attempt to delete line item {target.lineItemID}")
        raise LedgerMutationError(f"CommissionLineItem {target.lineItemID} is append-only")

    event.listen(CommissionLineItem, 'before_update', forbid_line_item_update)
    event.listen(CommissionLineItem, 'before_delete', forbid_line_item_delete)


def register_obligation_protection():
    """Forbid DELETE and rescheduling of PaymentObligation."""
    from models.payment import PaymentObligation

    def forbid_obligation_reschedule(mapper, connection, target):
        changed = [c for c in _changed_columns(target) if c in FROZEN_OBLIGATION_COLUMNS]
        if not changed:
            return

        logger.error(
            f"Attempt to reschedule obligation {target.obligationID} "
            f"(columns: {', '.join(changed)})"
        )
        raise LedgerMutationError(
            f"PaymentObligation {target.obligationID} cannot change {', '.join(changed)}"
        )

    def forbid_obligation_delete(mapper, connection, target):
        logger.error(f"Attempt to delete obligation {target.obligationID}")
        raise LedgerMutationError(
            f"PaymentObligation {target.obligationID} cannot be deleted, cancel it instead"
        )

    event.listen(PaymentObligation, 'before_update', forbid_obligation_reschedule)
    event.listen(PaymentObligation, 'before_delete', forbid_obligation_delete)
