# Overview: Atomic allocation of human-readable document numbers (invoices, deliveries, consignments).

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence, Warehouse
from .errors import ServiceError


class DocumentSequenceError(ServiceError):
    """Raised when document sequence operations fail."""


def next_sequence_value(*, warehouse_id: int, document_type: str) -> int:
    """
    Atomically allocate the next number for a warehouse/type.

    Increment-then-read inside the caller's transaction: the UPDATE takes the
    row lock, so two concurrent allocations can never read the same value.
    Must run inside the caller's transaction (no commit here).
    """
    if not warehouse_id:
        raise DocumentSequenceError("warehouse_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.warehouse_id == warehouse_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        seq = DocumentSequence(warehouse_id=warehouse_id, document_type=document_type, next_number=2)
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Another writer created the row first; the caller's transaction is
            # unusable now and must be retried from the top.
            raise DocumentSequenceError(
                "document sequence contention, retry",
                details={"warehouse_id": warehouse_id, "document_type": document_type},
            ) from exc
        return 1

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(warehouse_id=warehouse_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    warehouse_id: int,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Format: {prefix}-{terminal}-{warehouse code}-{number}, e.g. FAC-T01-CCS-000042.

    The terminal code keeps numbers globally unique even when terminals mint
    numbers against separate local databases while offline.
    """
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise DocumentSequenceError("warehouse not found", details={"warehouse_id": warehouse_id})

    number = next_sequence_value(warehouse_id=warehouse_id, document_type=document_type)
    terminal = current_app.config.get("TERMINAL_CODE", "T01")
    return f"{prefix}-{terminal}-{warehouse.code}-{number:0{pad}d}"
