"""
Flattening operation history.

Every flattening run a user keeps is stored as a FlatteningOperation:
  pending   - successful run awaiting approval
  failed    - run that did not produce a valid record
  completed - approved by the user
  reverted  - approved earlier, then rolled back to the original record

Only approve (pending -> completed) and revert (completed -> reverted)
change an operation.  Background jobs only ever create pending entries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError

from spfwatch import db
from spfwatch.models import FlatteningOperation
from spfwatch.spf.types import FlatteningOptions, FlatteningResult, SPFRecord

logger = logging.getLogger(__name__)


def record_operation(
    user_id: str,
    domain: str,
    record: SPFRecord,
    result: FlatteningResult,
    target_includes: Iterable[str],
    options: FlatteningOptions | None = None,
    trigger_type: str = "manual",
    rollback: dict | None = None,
) -> FlatteningOperation:
    """Store *result* as a new FlatteningOperation and commit it.

    *rollback* is the plan for undoing the operation once published.
    SQLAlchemy errors propagate to the caller after a rollback; the
    computed *result* is unaffected.
    """
    options = options or FlatteningOptions()
    operation = FlatteningOperation(
        user_id=user_id,
        domain=domain.strip().lower().rstrip("."),
        trigger_type=trigger_type,
        status="pending" if result.success else "failed",
        original_record=record.raw,
        original_lookup_count=result.original_lookups,
        target_includes=json.dumps(list(target_includes)),
        flattening_options=json.dumps(asdict(options)),
        flattened_record=result.flattened_record or None,
        new_lookup_count=result.new_lookups if result.success else None,
        resolved_ips=json.dumps(list(result.resolved_ips)),
        ip_count=result.ip_count,
        warnings=json.dumps(list(result.warnings)),
        errors=json.dumps(list(result.errors)),
        rollback_plan=json.dumps(rollback) if rollback else None,
    )
    db.session.add(operation)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to store flattening operation for %s", operation.domain)
        raise
    logger.info(
        "Stored flattening operation %d for %s (status=%s, trigger=%s)",
        operation.id, operation.domain, operation.status, trigger_type,
    )
    return operation


def get_operation(user_id: str, operation_id: int) -> FlatteningOperation | None:
    """Return the operation if it exists and belongs to *user_id*."""
    operation = db.session.get(FlatteningOperation, operation_id)
    if operation is None or operation.user_id != user_id:
        return None
    return operation


def list_operations(user_id: str, domain: str | None = None) -> list[FlatteningOperation]:
    """Return *user_id*'s operations, newest first, optionally for one domain."""
    query = db.select(FlatteningOperation).where(FlatteningOperation.user_id == user_id)
    if domain:
        query = query.where(FlatteningOperation.domain == domain.strip().lower().rstrip("."))
    query = query.order_by(FlatteningOperation.created_at.desc(), FlatteningOperation.id.desc())
    return list(db.session.execute(query).scalars())


def latest_completed(user_id: str, domain: str) -> FlatteningOperation | None:
    """Return the most recently approved operation for *domain*, if any."""
    return db.session.execute(
        db.select(FlatteningOperation)
        .where(
            FlatteningOperation.user_id == user_id,
            FlatteningOperation.domain == domain.strip().lower().rstrip("."),
            FlatteningOperation.status == "completed",
        )
        .order_by(FlatteningOperation.completed_at.desc(), FlatteningOperation.id.desc())
    ).scalars().first()


def approve_operation(user_id: str, operation_id: int) -> FlatteningOperation:
    """Mark a pending operation as completed.

    Raises:
        LookupError: No such operation for this user.
        ValueError: The operation is not pending.
    """
    operation = _require(user_id, operation_id)
    if operation.status != "pending":
        raise ValueError(
            f"Operation {operation_id} is {operation.status}; only pending operations can be approved"
        )
    operation.status = "completed"
    operation.completed_at = datetime.now(timezone.utc)
    _commit(operation, "approve")
    return operation


def revert_operation(user_id: str, operation_id: int) -> str:
    """Mark a completed operation as reverted and return its original record.

    Raises:
        LookupError: No such operation for this user.
        ValueError: The operation is not completed.
    """
    operation = _require(user_id, operation_id)
    if operation.status != "completed":
        raise ValueError(
            f"Operation {operation_id} is {operation.status}; only completed operations can be reverted"
        )
    operation.status = "reverted"
    operation.reverted_at = datetime.now(timezone.utc)
    _commit(operation, "revert")
    return operation.original_record


def _require(user_id: str, operation_id: int) -> FlatteningOperation:
    operation = get_operation(user_id, operation_id)
    if operation is None:
        raise LookupError(f"Flattening operation {operation_id} not found")
    return operation


def _commit(operation: FlatteningOperation, action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to %s flattening operation %d", action, operation.id)
        raise
    logger.info("Flattening operation %d for %s: %s", operation.id, operation.domain, operation.status)
