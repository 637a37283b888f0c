# models/listeners/ledger_listeners.py
"""
Ledger integrity listeners - guard append-only and immutable tables.

Architecture:
    AggregateSnapshot, QualificationSnapshot, SupportAction: UPDATE/DELETE rejected
    EarningEntry: DELETE rejected; UPDATE may only move status along
                  pending → eligible | capped, eligible → paid
                  (plus the matching settledAt/paidAt stamps)

Any violation raises LedgerIntegrityError inside the flush, so the
surrounding transaction is rolled back.
"""
import logging

from sqlalchemy import event, select
from sqlalchemy.orm.attributes import get_history, PASSIVE_NO_INITIALIZE

from matrix_system.errors import LedgerIntegrityError

logger = logging.getLogger(__name__)

# Columns an EarningEntry may change after insert
MUTABLE_ENTRY_COLUMNS = {"status", "settledAt", "paidAt"}


def register_ledger_listeners():
    """
    Register event listeners for ledger and snapshot immutability.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.aggregate_snapshot import AggregateSnapshot
    from models.qualification_snapshot import QualificationSnapshot
    from models.support_action import SupportAction
    from models.earning_entry import EarningEntry, EARNING_TRANSITIONS

    # =========================================================================
    # IMMUTABLE ROWS
    # =========================================================================

    def reject_update(mapper, connection, target):
        logger.error(f"Blocked UPDATE of immutable row {target!r}")
        raise LedgerIntegrityError(f"{type(target).__name__} rows are immutable")

    def reject_delete(mapper, connection, target):
        logger.error(f"Blocked DELETE of append-only row {target!r}")
        raise LedgerIntegrityError(f"{type(target).__name__} rows cannot be deleted")

    for model in (AggregateSnapshot, QualificationSnapshot, SupportAction):
        event.listen(model, 'before_update', reject_update)
        event.listen(model, 'before_delete', reject_delete)

    # =========================================================================
    # EARNING ENTRIES
    # =========================================================================

    def check_entry_update(mapper, connection, target):
        """Allow only forward status moves on an earning entry."""
        for attr in mapper.column_attrs:
            if attr.key in MUTABLE_ENTRY_COLUMNS:
                continue
            if get_history(target, attr.key, passive=PASSIVE_NO_INITIALIZE).has_changes():
                raise LedgerIntegrityError(
                    f"EarningEntry {target.entryID}: column '{attr.key}' is immutable"
                )

        history = get_history(target, 'status')
        if not history.has_changes():
            return

        if history.deleted:
            old_status = history.deleted[0]
        else:
            # Attribute was expired when set; read the stored value
            table = EarningEntry.__table__
            old_status = connection.execute(
                select(table.c.status).where(table.c.entryID == target.entryID)
            ).scalar()
        new_status = target.status

        if old_status == new_status:
            return

        if (old_status, new_status) not in EARNING_TRANSITIONS:
            raise LedgerIntegrityError(
                f"EarningEntry {target.entryID}: illegal transition "
                f"{old_status} → {new_status}"
            )

        logger.debug(f"EarningEntry {target.entryID}: {old_status} → {new_status}")

    event.listen(EarningEntry, 'before_update', check_entry_update)
    event.listen(EarningEntry, 'before_delete', reject_delete)
