"""
Idempotency ledger over ``BillingEventLog``.

``apply_once`` is the atomic contract: the effect's writes and the ledger row
share one transaction. Either both commit, or neither does.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from creatorhub.extensions import db
from creatorhub.models import BillingEventLog
from .errors import DuplicateEvent
from .events import EventEnvelope

logger = logging.getLogger(__name__)


def is_processed(event_id: str) -> bool:
    return db.session.query(BillingEventLog.id).filter_by(processor_event_id=event_id).first() is not None


def get_entry(event_id: str) -> Optional[BillingEventLog]:
    return BillingEventLog.query.filter_by(processor_event_id=event_id).first()


def apply_once(envelope: EventEnvelope, effect: Callable[[EventEnvelope], Optional[str]]) -> BillingEventLog:
    """
    Run ``effect`` and record ``envelope.id`` atomically.

    Raises DuplicateEvent when the id is already recorded, including when a
    concurrent delivery commits first (unique constraint on the event id).
    Any other failure rolls the whole unit back and propagates.
    """
    if is_processed(envelope.id):
        raise DuplicateEvent(envelope.id)

    try:
        notes = effect(envelope)
        entry = BillingEventLog(
            processor_event_id=envelope.id,
            type=envelope.type,
            payload=envelope.raw or {},
            notes=(notes or None) and str(notes)[:255],
        )
        db.session.add(entry)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        if is_processed(envelope.id):
            logger.info("ledger.duplicate_race", extra={"event_id": envelope.id})
            raise DuplicateEvent(envelope.id) from e
        raise
    except Exception:
        db.session.rollback()
        raise

    logger.info("ledger.applied", extra={"event_id": envelope.id, "type": envelope.type, "notes": entry.notes})
    return entry
