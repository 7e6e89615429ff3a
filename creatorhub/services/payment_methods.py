import logging
from typing import Any, Dict, List

from sqlalchemy.exc import IntegrityError

from creatorhub.extensions import db
from creatorhub.models import BillingCustomer, PaymentMethodCache
from creatorhub.utils.helpers import utcnow
from .errors import NotFound

logger = logging.getLogger(__name__)

MASKED_EXPIRY = "••/••"


def ensure_customer(user, *, processor) -> str:
    """Processor customer id for ``user``, creating the mapping on first use."""
    bc = BillingCustomer.query.filter_by(user_id=user.id).first()
    if bc:
        return bc.processor_customer_id

    customer = processor.find_or_create_customer(user.email, user_id=user.id)
    db.session.add(BillingCustomer(user_id=user.id, processor_customer_id=customer["id"]))
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race with another request for the same user
        db.session.rollback()
        bc = BillingCustomer.query.filter_by(user_id=user.id).first()
        if bc is None:
            raise
        return bc.processor_customer_id
    return customer["id"]


def _project(row: PaymentMethodCache) -> Dict[str, Any]:
    return {
        "id": row.processor_payment_method_id,
        "brand": row.brand,
        "last4": row.last4,
        "expiry": MASKED_EXPIRY,
        "is_default": bool(row.is_default),
    }


def _default_pm_id(customer: Dict[str, Any]) -> str | None:
    settings = customer.get("invoice_settings") or {}
    default = settings.get("default_payment_method")
    if isinstance(default, dict):
        default = default.get("id")
    return default


def list_payment_methods(user, *, processor) -> List[Dict[str, Any]]:
    """
    Re-fetch the user's cards and rebuild the cache in one transaction.
    Only masked fields are persisted or returned.
    """
    customer_id = ensure_customer(user, processor=processor)
    methods = processor.list_payment_methods(customer_id)
    default_id = _default_pm_id(processor.retrieve_customer(customer_id))

    now = utcnow()
    try:
        PaymentMethodCache.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        rows = []
        for pm in methods:
            card = pm.get("card") or {}
            row = PaymentMethodCache(
                user_id=user.id,
                processor_payment_method_id=pm["id"],
                brand=card.get("brand"),
                last4=card.get("last4"),
                is_default=pm["id"] == default_id,
                refreshed_at=now,
            )
            db.session.add(row)
            rows.append(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("payment_methods.refreshed", extra={"user_id": user.id, "count": len(rows)})
    return [_project(r) for r in rows]


def _owned(user, pm_id: str, *, processor) -> str:
    """Customer id owning ``pm_id``; NotFound for cards of other customers."""
    customer_id = ensure_customer(user, processor=processor)
    owned = {pm["id"] for pm in processor.list_payment_methods(customer_id)}
    if pm_id not in owned:
        raise NotFound(f"payment method {pm_id} not attached to user {user.id}")
    return customer_id


def set_default_payment_method(user, pm_id: str, *, processor) -> Dict[str, Any]:
    customer_id = _owned(user, pm_id, processor=processor)
    processor.set_default_payment_method(customer_id, pm_id)

    # Processor accepted; now mirror it locally
    PaymentMethodCache.query.filter_by(user_id=user.id).update({"is_default": False}, synchronize_session=False)
    PaymentMethodCache.query.filter_by(user_id=user.id, processor_payment_method_id=pm_id).update(
        {"is_default": True}, synchronize_session=False
    )
    db.session.commit()
    logger.info("payment_methods.default_set", extra={"user_id": user.id, "payment_method": pm_id})
    return {"id": pm_id, "is_default": True}


def delete_payment_method(user, pm_id: str, *, processor) -> Dict[str, Any]:
    _owned(user, pm_id, processor=processor)
    processor.detach_payment_method(pm_id)

    PaymentMethodCache.query.filter_by(user_id=user.id, processor_payment_method_id=pm_id).delete(
        synchronize_session=False
    )
    db.session.commit()
    logger.info("payment_methods.detached", extra={"user_id": user.id, "payment_method": pm_id})
    return {"id": pm_id, "deleted": True}


def create_setup_intent(user, *, processor) -> Dict[str, Any]:
    customer_id = ensure_customer(user, processor=processor)
    intent = processor.create_setup_intent(customer_id)
    return {"client_secret": intent.get("client_secret"), "setup_intent_id": intent.get("id")}
