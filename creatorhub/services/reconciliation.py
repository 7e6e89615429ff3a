"""Operator-facing record of local/processor disagreements."""
import logging
from typing import List, Optional

from creatorhub.extensions import db
from creatorhub.models import ReconciliationMismatchLog
from creatorhub.utils.helpers import utcnow
from .errors import NotFound

logger = logging.getLogger(__name__)


def record_mismatch(kind: str, *, local_id: Optional[int], processor_ref: Optional[str],
                    local_state: Optional[str], processor_state: Optional[str], detail: str) -> bool:
    """
    Add an unresolved mismatch unless the same one is already open.
    Joins the caller's transaction; returns True when a row was added.
    """
    open_row = (
        ReconciliationMismatchLog.query
        .filter_by(kind=kind, local_id=local_id, processor_ref=processor_ref, resolved_at=None)
        .first()
    )
    logger.warning(
        "reconciliation.mismatch",
        extra={"kind": kind, "local_id": local_id, "processor_ref": processor_ref,
               "local_state": local_state, "processor_state": processor_state, "already_open": bool(open_row)},
    )
    if open_row is not None:
        return False
    db.session.add(ReconciliationMismatchLog(
        kind=kind,
        local_id=local_id,
        processor_ref=processor_ref,
        local_state=local_state,
        processor_state=processor_state,
        detail=(detail or "")[:255],
    ))
    return True


def has_open_mismatch(kind: str, local_id: int) -> bool:
    return db.session.query(
        ReconciliationMismatchLog.query
        .filter_by(kind=kind, local_id=local_id, resolved_at=None)
        .exists()
    ).scalar()


def list_open_mismatches(kind: Optional[str] = None, limit: int = 200) -> List[ReconciliationMismatchLog]:
    q = ReconciliationMismatchLog.query.filter(ReconciliationMismatchLog.resolved_at.is_(None))
    if kind:
        q = q.filter(ReconciliationMismatchLog.kind == kind)
    return q.order_by(ReconciliationMismatchLog.detected_at.desc(), ReconciliationMismatchLog.id.desc()).limit(limit).all()


def resolve_mismatch(mismatch_id: int) -> ReconciliationMismatchLog:
    row = db.session.get(ReconciliationMismatchLog, mismatch_id)
    if row is None:
        raise NotFound(f"mismatch {mismatch_id}")
    if row.resolved_at is None:
        row.resolved_at = utcnow()
        db.session.commit()
    return row
