"""
Subscription reconciliation.

The processor is the source of truth. Rows are written from the processor's
own view of a subscription (re-fetched on every event, listed during a pull
sync) and upserted, so duplicate or reordered deliveries converge.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite

from creatorhub.extensions import db
from creatorhub.models import Creator, MembershipTier, User, UserSubscription
from creatorhub.models.reconciliation import KIND_SUBSCRIPTION
from creatorhub.models.subscription import SUB_ACTIVE, SUB_CANCELLED, SUB_EXPIRED, SUB_PENDING
from creatorhub.utils.helpers import as_utc, from_timestamp, to_decimal, to_minor_units, utcnow
from creatorhub.utils.validators import clean_str
from .errors import ConfigurationError, InvalidStateTransition, NotFound, PaymentError, PermissionDenied, ValidationFailed
from .events import InvoiceSettled, SubscriptionChanged, SubscriptionDeleted
from .payment_methods import ensure_customer
from .processor import iter_items, make_idempotency_key, object_id
from .reconciliation import record_mismatch

logger = logging.getLogger(__name__)

# Processor status -> local status
STATUS_MAP = {
    "active": SUB_ACTIVE,
    "trialing": SUB_ACTIVE,
    "past_due": SUB_ACTIVE,
    "incomplete": SUB_PENDING,
    "canceled": SUB_CANCELLED,
    "incomplete_expired": SUB_EXPIRED,
    "unpaid": SUB_EXPIRED,
}


def map_status(processor_status: Optional[str]) -> Optional[str]:
    return STATUS_MAP.get(processor_status or "")


@dataclass
class SyncResult:
    creator_id: int
    synced: int = 0
    skipped: int = 0
    mismatches: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def serialize_subscription(row: UserSubscription, now: Optional[datetime] = None) -> Dict[str, Any]:
    start = as_utc(row.current_period_start)
    end = as_utc(row.current_period_end)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "creator_id": row.creator_id,
        "tier_id": row.tier_id,
        "tier_title": row.tier.title if row.tier else None,
        "status": row.status,
        "current_period_start": start.isoformat() if start else None,
        "current_period_end": end.isoformat() if end else None,
        "cancel_at_period_end": bool(row.cancel_at_period_end),
        "entitled": row.is_entitled(now),
    }


# ---- processor dict helpers ----

def _first_item(sub: Dict[str, Any]) -> Dict[str, Any]:
    return next(iter_items(sub), {})


def _price_id(sub: Dict[str, Any]) -> Optional[str]:
    return object_id(_first_item(sub).get("price"))


def _processor_fields(sub: Dict[str, Any]) -> Dict[str, Any]:
    item = _first_item(sub)
    # Period bounds live on the item in newer API versions
    start = sub.get("current_period_start") or item.get("current_period_start")
    end = sub.get("current_period_end") or item.get("current_period_end")
    fields: Dict[str, Any] = {
        "processor_customer_id": object_id(sub.get("customer")),
        "processor_item_id": item.get("id"),
        "current_period_start": from_timestamp(start),
        "current_period_end": from_timestamp(end),
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
        "last_synced_at": utcnow(),
    }
    status = map_status(sub.get("status"))
    if status:
        fields["status"] = status
    return fields


def _client_secret(sub: Dict[str, Any]) -> Optional[str]:
    invoice = sub.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    secret = invoice.get("confirmation_secret")
    if isinstance(secret, dict) and secret.get("client_secret"):
        return secret["client_secret"]
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("client_secret")
    return None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _insert():
    """Dialect insert supporting ON CONFLICT for the bound engine."""
    name = db.session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"upsert not supported on {name}")


def _active_clash(user_id: int, creator_id: int, tier_id: int, exclude_id: Optional[int]) -> Optional[UserSubscription]:
    q = UserSubscription.query.filter_by(user_id=user_id, creator_id=creator_id, tier_id=tier_id, status=SUB_ACTIVE)
    if exclude_id is not None:
        q = q.filter(UserSubscription.id != exclude_id)
    return q.first()


def _record_second_active(clash: UserSubscription, sub: Dict[str, Any]) -> None:
    record_mismatch(
        KIND_SUBSCRIPTION,
        local_id=clash.id,
        processor_ref=sub["id"],
        local_state=clash.status,
        processor_state=sub.get("status"),
        detail=f"second active subscription {sub['id']} for the same tier",
    )


def upsert_subscription(sub: Dict[str, Any], *, user_id: int, creator_id: int, tier_id: int) -> Optional[UserSubscription]:
    """
    Write the processor's view of ``sub`` locally; never commits.

    An existing row for the processor subscription is updated in place.
    Otherwise the row is inserted. A second active subscription for a
    (user, creator, tier) that already has an active row is logged as a
    mismatch and not stored; returns None in that case.
    """
    sub_id = sub["id"]
    fields = _processor_fields(sub)

    row = UserSubscription.query.filter_by(processor_subscription_id=sub_id).first()
    if row is not None:
        becomes_active = fields.get("status", row.status) == SUB_ACTIVE
        clash = _active_clash(row.user_id, row.creator_id, tier_id, row.id) if becomes_active else None
        if clash is not None:
            _record_second_active(clash, sub)
            fields.pop("status", None)
        elif row.tier_id != tier_id:
            fields["tier_id"] = tier_id
        for key, value in fields.items():
            setattr(row, key, value)
        db.session.flush()
        return row

    values = dict(fields, user_id=user_id, creator_id=creator_id, tier_id=tier_id, processor_subscription_id=sub_id)
    values.setdefault("status", SUB_PENDING)
    active = values["status"] == SUB_ACTIVE
    if active:
        clash = _active_clash(user_id, creator_id, tier_id, None)
        if clash is not None:
            _record_second_active(clash, sub)
            return None

    # No conflict target: the processor id or the active triple may collide
    stmt = _insert()(UserSubscription).values(**values).on_conflict_do_nothing()
    db.session.execute(stmt)
    row = UserSubscription.query.populate_existing().filter_by(processor_subscription_id=sub_id).first()
    if row is None and active:
        # Lost the active slot to a concurrent insert
        clash = _active_clash(user_id, creator_id, tier_id, None)
        if clash is not None:
            _record_second_active(clash, sub)
    return row


def _tier_for(sub: Dict[str, Any], creator_id: Optional[int], fallback_tier_id: Optional[int]) -> Optional[MembershipTier]:
    price_id = _price_id(sub)
    tier = MembershipTier.query.filter_by(processor_price_id=price_id).first() if price_id else None
    if tier is None and fallback_tier_id:
        tier = db.session.get(MembershipTier, fallback_tier_id)
    if tier is None or (creator_id is not None and tier.creator_id != creator_id):
        return None
    return tier


def apply_processor_subscription(sub: Dict[str, Any]) -> str:
    """Event path: locate or create the local row for a processor subscription."""
    row = UserSubscription.query.filter_by(processor_subscription_id=sub["id"]).first()
    if row is not None:
        tier = _tier_for(sub, row.creator_id, row.tier_id)
        upsert_subscription(sub, user_id=row.user_id, creator_id=row.creator_id, tier_id=tier.id if tier else row.tier_id)
        return f"subscription {sub['id']}: {row.status}"

    md = sub.get("metadata") or {}
    user_id = _int_or_none(md.get("user_id"))
    creator_id = _int_or_none(md.get("creator_id"))
    tier_id = _int_or_none(md.get("tier_id"))
    if not (user_id and creator_id and tier_id):
        return f"subscription {sub['id']}: no local row and no ownership metadata; ignored"
    tier = _tier_for(sub, creator_id, tier_id)
    if tier is None or db.session.get(User, user_id) is None:
        return f"subscription {sub['id']}: metadata does not match a local user/tier; ignored"

    row = upsert_subscription(sub, user_id=user_id, creator_id=creator_id, tier_id=tier.id)
    if row is None:
        return f"subscription {sub['id']}: tier already has an active subscription; logged"
    return f"subscription {sub['id']}: created {row.status}"


# ---- event handlers (inside ledger.apply_once; never commit) ----

def on_subscription_changed(evt: SubscriptionChanged, *, processor) -> str:
    return apply_processor_subscription(processor.retrieve_subscription(evt.subscription_id))


def on_subscription_deleted(evt: SubscriptionDeleted, *, processor) -> str:
    return apply_processor_subscription(processor.retrieve_subscription(evt.subscription_id))


def on_invoice_settled(evt: InvoiceSettled, *, processor) -> str:
    if not evt.subscription_id:
        return f"invoice {evt.invoice_id}: not a subscription invoice"
    return apply_processor_subscription(processor.retrieve_subscription(evt.subscription_id))


# ---- pull sync ----

def sync_tier_subscriptions(creator_id: int, *, processor) -> SyncResult:
    """
    Reconcile every priced tier of a creator against the processor.
    Safe to re-run and to run concurrently; local rows the processor no
    longer reports as active are logged, never changed.
    """
    creator = db.session.get(Creator, creator_id)
    if creator is None:
        raise NotFound(f"creator {creator_id}")

    result = SyncResult(creator_id=creator_id)
    customers: Dict[str, Optional[Dict[str, Any]]] = {}
    tiers = (
        MembershipTier.query
        .filter(MembershipTier.creator_id == creator_id, MembershipTier.processor_price_id.isnot(None))
        .order_by(MembershipTier.id)
        .all()
    )

    for tier in tiers:
        seen = set()
        for sub in processor.list_subscriptions(tier.processor_price_id):
            if map_status(sub.get("status")) != SUB_ACTIVE:
                continue
            seen.add(sub["id"])

            customer_id = object_id(sub.get("customer"))
            if customer_id not in customers:
                customers[customer_id] = processor.retrieve_customer(customer_id) if customer_id else None
            customer = customers[customer_id]
            email = (customer or {}).get("email")
            if not customer or customer.get("deleted") or not email:
                result.skipped += 1
                continue

            # Email is the only join key the processor gives us for pre-existing subscriptions
            user = User.query.filter(func.lower(User.email) == email.strip().lower()).first()
            if user is None:
                logger.info("subscriptions.sync.unknown_customer", extra={"tier_id": tier.id, "subscription": sub["id"]})
                result.skipped += 1
                continue

            if upsert_subscription(sub, user_id=user.id, creator_id=creator_id, tier_id=tier.id) is None:
                result.skipped += 1
                continue
            result.synced += 1

        stale = UserSubscription.query.filter(
            UserSubscription.tier_id == tier.id,
            UserSubscription.status == SUB_ACTIVE,
        ).all()
        for row in stale:
            if row.processor_subscription_id in seen:
                continue
            if record_mismatch(
                KIND_SUBSCRIPTION,
                local_id=row.id,
                processor_ref=row.processor_subscription_id,
                local_state=row.status,
                processor_state="not_active",
                detail=f"active locally but not active at the processor for tier {tier.id}",
            ):
                result.mismatches += 1
        db.session.commit()

    logger.info("subscriptions.sync.done", extra=result.to_dict())
    return result


# ---- user operations ----

def _load(subscription_id: int) -> UserSubscription:
    row = db.session.get(UserSubscription, subscription_id)
    if row is None:
        raise NotFound(f"subscription {subscription_id}")
    return row


def _require_owner(row: UserSubscription, actor) -> None:
    if actor is None or row.user_id != actor.id:
        raise PermissionDenied(f"user {getattr(actor, 'id', None)} does not own subscription {row.id}")


def _sellable_tier(tier_id: int, creator_id: int) -> MembershipTier:
    tier = db.session.get(MembershipTier, tier_id)
    if tier is None or tier.creator_id != creator_id or not tier.is_active:
        raise ValidationFailed(["tier_id: not offered by this creator"])
    if not tier.processor_price_id:
        raise ConfigurationError(f"tier {tier.id} has no processor price")
    return tier


def create_subscription(user, tier_id: int, creator_id: int, *, processor) -> Dict[str, Any]:
    """
    Start a processor subscription. The local row appears once the
    processor reports it (event or sync).
    """
    tier = _sellable_tier(tier_id, creator_id)
    creator = db.session.get(Creator, creator_id)
    if creator is not None and creator.user_id == user.id:
        raise ValidationFailed(["creator_id: cannot subscribe to yourself"])

    current = UserSubscription.query.filter_by(user_id=user.id, creator_id=creator_id, status=SUB_ACTIVE).all()
    if any(r.tier_id == tier.id for r in current):
        raise InvalidStateTransition(f"user {user.id} already subscribed to tier {tier.id}",
                                     user_message="You are already subscribed to this tier.")
    if current:
        result = change_tier(current[0].id, tier.id, actor=user, processor=processor)
        result["changed_tier"] = True
        return result

    attempts = UserSubscription.query.filter_by(user_id=user.id, creator_id=creator_id, tier_id=tier.id).count()
    customer_id = ensure_customer(user, processor=processor)
    sub = processor.create_subscription(
        customer_id,
        tier.processor_price_id,
        metadata={"user_id": str(user.id), "creator_id": str(creator_id), "tier_id": str(tier.id)},
        idempotency_key=make_idempotency_key("subscribe", user.id, tier.id, attempts),
    )
    logger.info("subscriptions.created", extra={"user_id": user.id, "tier_id": tier.id, "subscription": sub["id"]})
    return {
        "processor_subscription_id": sub["id"],
        "status": map_status(sub.get("status")) or SUB_PENDING,
        "client_secret": _client_secret(sub),
        "pending_confirmation": True,
    }


def change_tier(subscription_id: int, new_tier_id: int, *, actor, processor) -> Dict[str, Any]:
    """One processor update with proration; the local row follows the processor's answer."""
    row = _load(subscription_id)
    _require_owner(row, actor)
    if row.status != SUB_ACTIVE:
        raise InvalidStateTransition(f"subscription {row.id} is {row.status}")

    tier = _sellable_tier(new_tier_id, row.creator_id)
    if tier.id == row.tier_id:
        raise InvalidStateTransition(f"subscription {row.id} already on tier {tier.id}",
                                     user_message="You are already on this tier.")
    if _active_clash(row.user_id, row.creator_id, tier.id, row.id) is not None:
        raise InvalidStateTransition(f"user {row.user_id} already active on tier {tier.id}",
                                     user_message="You are already subscribed to this tier.")

    item_id = row.processor_item_id
    if not item_id:
        item_id = _first_item(processor.retrieve_subscription(row.processor_subscription_id)).get("id")
    if not item_id:
        raise InvalidStateTransition(f"subscription {row.processor_subscription_id} has no items")

    sub = processor.update_subscription_price(
        row.processor_subscription_id,
        item_id,
        tier.processor_price_id,
        idempotency_key=make_idempotency_key("change-tier", row.processor_subscription_id, row.tier_id, tier.id),
        metadata={"user_id": str(row.user_id), "creator_id": str(row.creator_id), "tier_id": str(tier.id)},
    )

    upsert_subscription(sub, user_id=row.user_id, creator_id=row.creator_id, tier_id=tier.id)
    db.session.commit()
    db.session.refresh(row)
    logger.info("subscriptions.tier_changed", extra={"subscription_id": row.id, "tier_id": tier.id})
    return serialize_subscription(row)


def cancel_subscription(subscription_id: int, *, actor, processor, immediately: bool = False) -> Dict[str, Any]:
    row = _load(subscription_id)
    _require_owner(row, actor)
    if row.status != SUB_ACTIVE:
        raise InvalidStateTransition(f"subscription {row.id} is {row.status}")
    if row.cancel_at_period_end and not immediately:
        return serialize_subscription(row)

    if immediately:
        sub = processor.cancel_subscription(row.processor_subscription_id)
    else:
        sub = processor.set_cancel_at_period_end(row.processor_subscription_id, True)

    upsert_subscription(sub, user_id=row.user_id, creator_id=row.creator_id, tier_id=row.tier_id)
    db.session.commit()
    db.session.refresh(row)
    logger.info("subscriptions.cancelled", extra={"subscription_id": row.id, "immediately": immediately})
    return serialize_subscription(row)


def reactivate_subscription(subscription_id: int, *, actor, processor) -> Dict[str, Any]:
    """Undo a scheduled cancellation while the paid period is still running."""
    row = _load(subscription_id)
    _require_owner(row, actor)
    if row.status != SUB_ACTIVE or not row.cancel_at_period_end or not row.is_entitled():
        raise InvalidStateTransition(f"subscription {row.id} is not scheduled to cancel")

    sub = processor.set_cancel_at_period_end(row.processor_subscription_id, False)
    upsert_subscription(sub, user_id=row.user_id, creator_id=row.creator_id, tier_id=row.tier_id)
    db.session.commit()
    db.session.refresh(row)
    logger.info("subscriptions.reactivated", extra={"subscription_id": row.id})
    return serialize_subscription(row)


def expire_lapsed_subscriptions(now: Optional[datetime] = None) -> int:
    """Scheduled: rows past their paid period with a pending cancellation become cancelled."""
    cutoff = as_utc(now) or utcnow()
    rows = (
        UserSubscription.query
        .filter(
            UserSubscription.status == SUB_ACTIVE,
            UserSubscription.cancel_at_period_end.is_(True),
            UserSubscription.current_period_end.isnot(None),
            UserSubscription.current_period_end <= cutoff,
        )
        .update({"status": SUB_CANCELLED}, synchronize_session=False)
    )
    db.session.commit()
    if rows:
        logger.info("subscriptions.expired", extra={"count": rows})
    return rows


# ---- read models ----

def is_entitled(user_id: int, creator_id: int, now: Optional[datetime] = None) -> bool:
    rows = UserSubscription.query.filter_by(user_id=user_id, creator_id=creator_id, status=SUB_ACTIVE).all()
    return any(r.is_entitled(now) for r in rows)


def list_user_subscriptions(user_id: int) -> List[Dict[str, Any]]:
    rows = (
        UserSubscription.query
        .filter_by(user_id=user_id)
        .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
        .all()
    )
    return [serialize_subscription(r) for r in rows]


def require_creator_owner(creator_id: int, actor) -> Creator:
    creator = db.session.get(Creator, creator_id)
    if creator is None:
        raise NotFound(f"creator {creator_id}")
    if not getattr(actor, "is_operator", False) and creator.user_id != actor.id:
        raise PermissionDenied(f"user {actor.id} does not own creator {creator_id}")
    return creator


def list_creator_subscribers(creator_id: int, *, actor) -> List[Dict[str, Any]]:
    require_creator_owner(creator_id, actor)
    rows = (
        UserSubscription.query
        .filter_by(creator_id=creator_id, status=SUB_ACTIVE)
        .order_by(UserSubscription.id)
        .all()
    )
    return [serialize_subscription(r) for r in rows]


def create_tier(creator_id: int, title: Any, price: Any, *, actor, processor) -> Dict[str, Any]:
    """Add a monthly tier backed by a new processor price."""
    creator = require_creator_owner(creator_id, actor)
    errors = []
    name = clean_str(title)
    if not name:
        errors.append("title: required")
    amount = to_decimal(price)
    if amount is None or amount <= 0:
        errors.append("price: must be greater than zero")
    if errors:
        raise ValidationFailed(errors)

    tier = MembershipTier(creator_id=creator.id, title=name, price=amount)
    db.session.add(tier)
    db.session.flush()
    try:
        created = processor.create_price(
            to_minor_units(amount),
            product_name=f"{creator.display_name} - {name}",
            metadata={"creator_id": str(creator.id), "tier_id": str(tier.id)},
            idempotency_key=make_idempotency_key("tier-price", tier.id, to_minor_units(amount)),
        )
    except PaymentError:
        db.session.rollback()
        raise
    tier.processor_price_id = created["id"]
    tier.processor_product_id = object_id(created.get("product"))
    db.session.commit()
    logger.info("subscriptions.tier_created", extra={"tier_id": tier.id, "creator_id": creator.id})
    return {"id": tier.id, "title": tier.title, "price": f"{tier.price:.2f}",
            "processor_price_id": tier.processor_price_id, "is_active": True}


def delete_tier(tier_id: int, *, actor, processor) -> Dict[str, Any]:
    """Archive a tier; refused while any active subscription references it."""
    tier = db.session.get(MembershipTier, tier_id)
    if tier is None:
        raise NotFound(f"tier {tier_id}")
    require_creator_owner(tier.creator_id, actor)

    active = UserSubscription.query.filter_by(tier_id=tier.id, status=SUB_ACTIVE).count()
    if active:
        raise InvalidStateTransition(
            f"tier {tier.id} has {active} active subscriptions",
            user_message="Cancel the active subscriptions on this tier before deleting it.",
        )

    if tier.processor_price_id and tier.is_active:
        processor.archive_price(tier.processor_price_id)
    tier.is_active = False
    db.session.commit()
    logger.info("subscriptions.tier_deleted", extra={"tier_id": tier.id})
    return {"id": tier.id, "is_active": False}
