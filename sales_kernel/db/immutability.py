"""
ORM-Level Immutability Enforcement.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError is raised, the flush aborts and
UnitOfWork rolls the transaction back.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                 | When Immutable               | Why
-----------------------|------------------------------|---------------------------------
InventoryTransaction   | ALWAYS (from creation)       | Stock trail must replay exactly
SaleLine               | ALWAYS (from creation)       | Prices frozen at sale time
BundleLine             | ALWAYS (from creation)       | Reservation was made against them
Payment                | After status = PAID          | Settlement sum must not drift

updated_at is audit metadata and may change on any row.

===============================================================================
USAGE
===============================================================================

    from sales_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # bootstrap() calls this once

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from sales_kernel.exceptions import ImmutabilityViolationError
from sales_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at"})


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    """Names of non-audit attributes with pending changes."""
    return [
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in _AUDIT_FIELDS and attr.history.has_changes()
    ]


def _append_only_update_guard(entity_type: str):
    def _check(mapper, connection, target):
        fields = _changed_fields(target)
        if fields:
            _block(
                entity_type,
                target,
                "UPDATE",
                f"{entity_type} rows are append-only (attempted to change {', '.join(fields)})",
            )

    _check.__name__ = f"_check_{entity_type.lower()}_immutability"
    return _check


def _append_only_delete_guard(entity_type: str):
    def _check(mapper, connection, target):
        _block(entity_type, target, "DELETE", f"{entity_type} rows cannot be deleted")

    _check.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check


_check_inventory_transaction_immutability = _append_only_update_guard("InventoryTransaction")
_check_inventory_transaction_delete = _append_only_delete_guard("InventoryTransaction")
_check_sale_line_immutability = _append_only_update_guard("SaleLine")
_check_sale_line_delete = _append_only_delete_guard("SaleLine")
_check_bundle_line_immutability = _append_only_update_guard("BundleLine")
_check_bundle_line_delete = _append_only_delete_guard("BundleLine")


def _was_paid(target) -> bool:
    """True if the payment was already PAID before this flush."""
    from sales_kernel.domain.dtos import PaymentRecordStatus

    history = inspect(target).attrs.status.history
    if history.deleted:
        return history.deleted[0] == PaymentRecordStatus.PAID
    if not history.added:
        return target.status == PaymentRecordStatus.PAID
    # Status is being set in this flush: PENDING -> PAID is the settlement itself
    return False


def _check_payment_immutability(mapper, connection, target):
    """
    Block edits to a PAID payment.

    The settlement transition (PENDING/OVERDUE -> PAID) is allowed; anything
    after it is not.
    """
    if not _was_paid(target):
        return
    fields = _changed_fields(target)
    if fields:
        _block(
            "Payment",
            target,
            "UPDATE",
            f"Cannot modify field '{fields[0]}' on a paid payment",
        )


def _check_payment_delete(mapper, connection, target):
    from sales_kernel.domain.dtos import PaymentRecordStatus

    if target.status == PaymentRecordStatus.PAID:
        _block("Payment", target, "DELETE", "Paid payments cannot be deleted")


def _listeners():
    from sales_kernel.models.bundle import BundleLine
    from sales_kernel.models.inventory import InventoryTransaction
    from sales_kernel.models.payment import Payment
    from sales_kernel.models.sale import SaleLine

    return [
        (InventoryTransaction, "before_update", _check_inventory_transaction_immutability),
        (InventoryTransaction, "before_delete", _check_inventory_transaction_delete),
        (SaleLine, "before_update", _check_sale_line_immutability),
        (SaleLine, "before_delete", _check_sale_line_delete),
        (BundleLine, "before_update", _check_bundle_line_immutability),
        (BundleLine, "before_delete", _check_bundle_line_delete),
        (Payment, "before_update", _check_payment_immutability),
        (Payment, "before_delete", _check_payment_delete),
    ]


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Idempotent; call after models are importable and before any writes.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
