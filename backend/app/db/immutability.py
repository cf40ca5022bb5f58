"""
ORM guards for frozen columns and append-only tables.

- Obligation.amount and Obligation.correlation_token never change after insert
  (frozen-rate guarantee, tokens are never reused).
- ReconciliationRecord rows are never updated or deleted.

The listeners fire before SQL reaches the database, so a violating flush is
aborted and the surrounding transaction rolls back.
"""
import logging
from sqlalchemy import event, inspect
from app.core.exceptions import ImmutableRecord

logger = logging.getLogger(__name__)

FROZEN_OBLIGATION_FIELDS = ("amount", "correlation_token", "membership_id")


def _check_obligation_frozen_fields(mapper, connection, target):
    state = inspect(target)
    for field in FROZEN_OBLIGATION_FIELDS:
        history = state.attrs[field].history
        if history.has_changes():
            logger.error(f"Blocked update of frozen field '{field}' on obligation {target.id}")
            raise ImmutableRecord(
                f"Obligation {target.id}: '{field}' is frozen after creation",
                obligation_id=target.id,
                field=field,
            )


def _check_reconciliation_record_update(mapper, connection, target):
    logger.error(f"Blocked update of reconciliation record {target.id}")
    raise ImmutableRecord(
        f"Reconciliation record {target.id} is append-only",
        record_id=target.id,
    )


def _check_reconciliation_record_delete(mapper, connection, target):
    logger.error(f"Blocked delete of reconciliation record {target.id}")
    raise ImmutableRecord(
        f"Reconciliation record {target.id} is append-only",
        record_id=target.id,
    )


def register_immutability_listeners():
    """Attach guards to the mapped classes. Safe to call more than once."""
    from app.models.obligation import Obligation
    from app.models.reconciliation import ReconciliationRecord

    listeners = [
        (Obligation, "before_update", _check_obligation_frozen_fields),
        (ReconciliationRecord, "before_update", _check_reconciliation_record_update),
        (ReconciliationRecord, "before_delete", _check_reconciliation_record_delete),
    ]
    for target, name, fn in listeners:
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
