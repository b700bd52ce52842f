# Overview: ORM listeners that keep audit rows append-only.

"""
ORM-level immutability for ledger audit rows.

Protected entities:

Entity               | When immutable         | Allowed changes
---------------------|------------------------|-------------------------------------------
FiscalEvent          | always                 | none (no update, no delete)
GiftCardTransaction  | always                 | none (no update, no delete)
Charge               | once status=succeeded  | refunded, amount_refunded, charge_metadata

Listeners fire on flush, before SQL is sent; the violation aborts the
caller's unit of work. Bulk Core statements bypass them (test fixtures use
that to reset tables).
"""

from __future__ import annotations

from sqlalchemy import event, inspect

from .errors import ImmutabilityViolationError
from .models import Charge, FiscalEvent, GiftCardTransaction
from .models.payments import CHARGE_SUCCEEDED

CHARGE_MUTABLE_AFTER_SUCCESS = frozenset({"refunded", "amount_refunded", "charge_metadata"})

_registered = False


def _refuse_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        f"{type(target).__name__} {target.id} is append-only and cannot be modified",
        {"entity": type(target).__name__, "id": target.id},
    )


def _refuse_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        f"{type(target).__name__} {target.id} is append-only and cannot be deleted",
        {"entity": type(target).__name__, "id": target.id},
    )


def _check_charge_update(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    if status_history.deleted:
        was_succeeded = status_history.deleted[0] == CHARGE_SUCCEEDED
    else:
        was_succeeded = target.status == CHARGE_SUCCEEDED
    if not was_succeeded:
        return

    changed = [
        attr.key
        for attr in state.attrs
        if attr.key not in CHARGE_MUTABLE_AFTER_SUCCESS and attr.history.has_changes()
        and attr.key in mapper.columns.keys()
    ]
    if changed:
        raise ImmutabilityViolationError(
            f"Charge {target.id} is settled; fields {', '.join(sorted(changed))} cannot change",
            {"entity": "Charge", "id": target.id, "fields": sorted(changed)},
        )


def _check_charge_delete(mapper, connection, target):
    if target.status == CHARGE_SUCCEEDED:
        _refuse_delete(mapper, connection, target)


def register_immutability_listeners() -> None:
    """Install listeners once per process (idempotent)."""
    global _registered
    if _registered:
        return
    for model in (FiscalEvent, GiftCardTransaction):
        event.listen(model, "before_update", _refuse_update)
        event.listen(model, "before_delete", _refuse_delete)
    event.listen(Charge, "before_update", _check_charge_update)
    event.listen(Charge, "before_delete", _check_charge_delete)
    _registered = True
