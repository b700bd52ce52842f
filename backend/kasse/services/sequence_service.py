# Overview: Service-layer operations for per-store number sequences.

from __future__ import annotations

from sqlalchemy import update

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence

SEQUENCE_SESSION = "session"
SEQUENCE_SALES_RECEIPT = "receipt.sales"
SEQUENCE_RETURN_RECEIPT = "receipt.return"


def _ensure_sequence_row(store_id: int, sequence_type: str) -> None:
    """Insert the sequence row if missing without failing when another writer wins the race."""
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        exists = (
            db.session.query(DocumentSequence.id)
            .filter_by(store_id=store_id, sequence_type=sequence_type)
            .first()
        )
        if not exists:
            db.session.add(DocumentSequence(store_id=store_id, sequence_type=sequence_type, next_number=1))
            db.session.flush()
        return

    stmt = (
        insert(DocumentSequence)
        .values(store_id=store_id, sequence_type=sequence_type, next_number=1)
        .on_conflict_do_nothing(index_elements=["store_id", "sequence_type"])
    )
    db.session.execute(stmt)


def next_number(*, store_id: int, sequence_type: str) -> int:
    """
    Atomically allocate the next number for a store/sequence.

    The UPDATE takes the row's write lock, which is held until the caller's
    unit of work commits, so concurrent allocations are serialized and a
    rolled-back allocation is given out again.
    """
    if not store_id:
        raise ValidationError("store_id is required")
    if not sequence_type:
        raise ValidationError("sequence_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == store_id,
            DocumentSequence.sequence_type == sequence_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        _ensure_sequence_row(store_id, sequence_type)
        db.session.execute(stmt)

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, sequence_type=sequence_type)
        .scalar()
    )
    return current - 1


def format_number(prefix: str, store_id: int, number: int, pad: int = 6) -> str:
    return f"{prefix}-{store_id:03d}-{number:0{pad}d}"
