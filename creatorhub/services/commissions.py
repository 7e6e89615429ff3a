"""
Commission lifecycle.

Local status only moves forward along

    pending -> payment_authorized -> {accepted, rejected, payment_failed}
    accepted -> refunded

and only through conditional ``UPDATE ... WHERE status IN (...)`` statements,
so any subset of processor events applied in any order converges. User
actions (accept/reject/refund) call the processor and leave the status to
the confirming event; ``pending_action`` is the claim that keeps a second
concurrent call from reaching the processor.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy import func

from creatorhub.extensions import db
from creatorhub.models import (
    CommissionRequest,
    CommissionRevision,
    CommissionType,
    Creator,
)
from creatorhub.models.commission import (
    ACTION_CANCEL,
    ACTION_CAPTURE,
    ACTION_REFUND,
    REVISION_AWAITING_PAYMENT,
    REVISION_CANCELLED,
    REVISION_PAYMENT_FAILED,
    REVISION_REQUESTED,
    STATUS_ACCEPTED,
    STATUS_PAYMENT_AUTHORIZED,
    STATUS_PAYMENT_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    STATUS_REJECTED,
)
from creatorhub.models.reconciliation import KIND_COMMISSION
from creatorhub.utils.helpers import to_decimal, to_minor_units
from creatorhub.utils.validators import clean_str, clean_text, validate_commission_details
from .errors import (
    ConfigurationError,
    InvalidStateTransition,
    NotFound,
    PaymentError,
    PaymentSetupError,
    PermissionDenied,
    ReconciliationMismatch,
    ValidationFailed,
)
from .events import (
    ChargeCaptured,
    ChargeRefunded,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
)
from .payment_methods import ensure_customer
from .processor import REUSABLE_INTENT_STATUSES, make_idempotency_key
from .reconciliation import has_open_mismatch, record_mismatch

logger = logging.getLogger(__name__)

INTENT_TYPE_COMMISSION = "commission_payment"
INTENT_TYPE_REVISION = "revision_payment"

DECISION_ACCEPT = "accept"
DECISION_REJECT = "reject"

# Target status -> statuses it may be entered from
_ALLOWED_FROM = {
    STATUS_PAYMENT_AUTHORIZED: (STATUS_PENDING,),
    STATUS_PAYMENT_FAILED: (STATUS_PENDING, STATUS_PAYMENT_AUTHORIZED),
    STATUS_REJECTED: (STATUS_PENDING, STATUS_PAYMENT_AUTHORIZED),
    STATUS_ACCEPTED: (STATUS_PENDING, STATUS_PAYMENT_AUTHORIZED),
    STATUS_REFUNDED: (STATUS_PENDING, STATUS_PAYMENT_AUTHORIZED, STATUS_ACCEPTED),
}

_REVISION_OPTIMISTIC_ATTEMPTS = 3


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def serialize_commission(req: CommissionRequest) -> Dict[str, Any]:
    return {
        "id": req.id,
        "customer_id": req.customer_id,
        "creator_id": req.creator_id,
        "commission_type_id": req.commission_type_id,
        "title": req.title,
        "description": req.description,
        "reference_images": list(req.reference_images or []),
        "agreed_price": _money(req.agreed_price),
        "status": req.status,
        "pending_action": req.pending_action,
        "revision_count": req.revision_count,
        "payment_intent_id": req.processor_payment_intent_id,
        "resubmitted_from_id": req.resubmitted_from_id,
        "revisions": [
            {
                "id": r.id,
                "revision_number": r.revision_number,
                "notes": r.notes,
                "is_extra": r.is_extra,
                "fee_amount": _money(r.fee_amount),
                "status": r.status,
            }
            for r in req.revisions
        ],
    }


# ---- loading & guards ----

def _load(request_id: int) -> CommissionRequest:
    req = db.session.get(CommissionRequest, request_id)
    if req is None:
        raise NotFound(f"commission request {request_id}")
    return req


def _require_customer(req: CommissionRequest, actor) -> None:
    if actor is None or req.customer_id != actor.id:
        raise PermissionDenied(f"user {getattr(actor, 'id', None)} is not the customer of request {req.id}")


def _require_creator(req: CommissionRequest, actor) -> None:
    creator = req.creator or db.session.get(Creator, req.creator_id)
    if actor is None or creator is None or creator.user_id != actor.id:
        raise PermissionDenied(f"user {getattr(actor, 'id', None)} is not the creator of request {req.id}")


# ---- conditional updates ----

def _advance(request_id: int, target: str, *, intent_id: Optional[str] = None) -> bool:
    """Move ``request_id`` to ``target`` if the lattice allows it; returns whether a row changed."""
    values: Dict[str, Any] = {"status": target, "pending_action": None}
    if intent_id:
        values["processor_payment_intent_id"] = func.coalesce(CommissionRequest.processor_payment_intent_id, intent_id)
    rows = (
        CommissionRequest.query
        .filter(CommissionRequest.id == request_id, CommissionRequest.status.in_(_ALLOWED_FROM[target]))
        .update(values, synchronize_session=False)
    )
    return rows == 1


def _claim(request_id: int, action: str, from_status: str) -> bool:
    rows = (
        CommissionRequest.query
        .filter(
            CommissionRequest.id == request_id,
            CommissionRequest.status == from_status,
            CommissionRequest.pending_action.is_(None),
        )
        .update({"pending_action": action}, synchronize_session=False)
    )
    db.session.commit()
    return rows == 1


def _release(request_id: int, action: str) -> None:
    CommissionRequest.query.filter(
        CommissionRequest.id == request_id,
        CommissionRequest.pending_action == action,
    ).update({"pending_action": None}, synchronize_session=False)
    db.session.commit()


def _record_mismatch(req: CommissionRequest, processor_ref: Optional[str], processor_state: Optional[str],
                     detail: str) -> None:
    record_mismatch(
        KIND_COMMISSION,
        local_id=req.id,
        processor_ref=processor_ref,
        local_state=req.status,
        processor_state=processor_state,
        detail=detail,
    )


# ---- operations ----

def submit_commission(customer, creator_id: int, commission_type_id: int, details: Dict[str, Any]) -> int:
    max_images = int(current_app.config.get("COMMISSION_MAX_REFERENCE_IMAGES", 5))
    errors = validate_commission_details(details, max_reference_images=max_images)
    if errors:
        raise ValidationFailed(errors)

    creator = db.session.get(Creator, creator_id)
    if creator is None:
        raise NotFound(f"creator {creator_id}")
    if creator.user_id == customer.id:
        raise ValidationFailed(["creator_id: cannot commission yourself"])

    ctype = db.session.get(CommissionType, commission_type_id)
    if ctype is None or ctype.creator_id != creator.id or not ctype.is_active:
        raise ValidationFailed(["commission_type_id: not offered by this creator"])

    req = CommissionRequest(
        customer_id=customer.id,
        creator_id=creator.id,
        commission_type_id=ctype.id,
        title=clean_str(details.get("title")),
        description=clean_text(details.get("description")),
        reference_images=[u.strip() for u in (details.get("reference_images") or [])],
        agreed_price=ctype.base_price,
        status=STATUS_PENDING,
    )
    db.session.add(req)
    db.session.commit()
    logger.info("commission.submitted", extra={"request_id": req.id, "creator_id": creator.id})
    return req.id


def authorize_payment(request_id: int, amount: Any, *, actor, processor) -> Dict[str, Any]:
    """
    Start a held authorization for ``agreed_price``. The local row stays
    ``pending`` until ``payment_intent.succeeded`` arrives.
    """
    req = _load(request_id)
    _require_customer(req, actor)

    if req.status != STATUS_PENDING:
        raise PaymentSetupError(f"request {req.id} is {req.status}", user_message="This request is not awaiting payment.")
    value = to_decimal(amount)
    if value is None or value <= 0:
        raise PaymentSetupError(f"invalid amount {amount!r}", user_message="Amount must be greater than zero.")
    if value != req.agreed_price:
        raise PaymentSetupError(
            f"amount {value} != agreed {req.agreed_price}", user_message="Amount does not match the agreed price."
        )

    previous = req.processor_payment_intent_id
    if previous:
        intent = processor.retrieve_payment_intent(previous)
        if intent.get("status") in REUSABLE_INTENT_STATUSES or intent.get("status") == "requires_capture":
            return {
                "request_id": req.id,
                "status": req.status,
                "payment_intent_id": previous,
                "client_secret": intent.get("client_secret"),
                "pending_confirmation": True,
            }

    customer_id = ensure_customer(actor, processor=processor)
    intent = processor.authorize(
        to_minor_units(req.agreed_price),
        customer_id=customer_id,
        metadata={
            "commission_request_id": str(req.id),
            "customer_id": str(req.customer_id),
            "creator_id": str(req.creator_id),
            "type": INTENT_TYPE_COMMISSION,
        },
        idempotency_key=make_idempotency_key("commission-auth", req.id, previous or ""),
        description=f"Commission #{req.id}",
    )

    rows = (
        CommissionRequest.query
        .filter(CommissionRequest.id == req.id, CommissionRequest.status == STATUS_PENDING)
        .update({"processor_payment_intent_id": intent["id"]}, synchronize_session=False)
    )
    db.session.commit()
    if rows != 1:
        logger.warning("commission.authorize.raced", extra={"request_id": req.id, "intent_id": intent["id"]})
    db.session.refresh(req)

    logger.info("commission.authorize.started", extra={"request_id": req.id, "intent_id": intent["id"]})
    return {
        "request_id": req.id,
        "status": req.status,
        "payment_intent_id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "pending_confirmation": True,
    }


def creator_decision(request_id: int, decision: str, *, actor, processor) -> Dict[str, Any]:
    """Capture (accept) or release (reject) the hold; the event sets the final status."""
    if decision not in (DECISION_ACCEPT, DECISION_REJECT):
        raise ValidationFailed(["decision: must be 'accept' or 'reject'"])

    req = _load(request_id)
    _require_creator(req, actor)

    action = ACTION_CAPTURE if decision == DECISION_ACCEPT else ACTION_CANCEL
    if not _claim(req.id, action, STATUS_PAYMENT_AUTHORIZED):
        db.session.refresh(req)
        raise InvalidStateTransition(
            f"request {req.id} status={req.status} pending_action={req.pending_action}; cannot {decision}"
        )

    intent_id = req.processor_payment_intent_id
    key = make_idempotency_key("commission", action, req.id, intent_id)
    try:
        if action == ACTION_CAPTURE:
            processor.capture(intent_id, idempotency_key=key)
        else:
            processor.cancel(intent_id, idempotency_key=key)
    except PaymentError:
        _release(req.id, action)
        raise

    db.session.refresh(req)
    logger.info("commission.decision", extra={"request_id": req.id, "decision": decision, "intent_id": intent_id})
    return {
        "request_id": req.id,
        "status": req.status,
        "pending_action": action,
        "pending_confirmation": True,
    }


def _free_revision(req: CommissionRequest, notes: str, actor) -> Optional[CommissionRevision]:
    """Consume one included revision; None once they are used up."""
    for _ in range(_REVISION_OPTIMISTIC_ATTEMPTS):
        db.session.refresh(req)
        observed = req.revision_count
        if observed >= req.commission_type.max_revisions:
            return None
        rows = (
            CommissionRequest.query
            .filter(
                CommissionRequest.id == req.id,
                CommissionRequest.status == STATUS_ACCEPTED,
                CommissionRequest.revision_count == observed,
            )
            .update({"revision_count": observed + 1}, synchronize_session=False)
        )
        if rows == 1:
            rev = CommissionRevision(
                commission_request_id=req.id,
                requester_id=actor.id,
                revision_number=observed + 1,
                notes=notes,
                is_extra=False,
                status=REVISION_REQUESTED,
            )
            db.session.add(rev)
            db.session.commit()
            return rev
        db.session.rollback()
    raise InvalidStateTransition(f"request {req.id}: revision counter kept changing")


def request_revision(request_id: int, notes: Any, *, actor, processor) -> Dict[str, Any]:
    text = clean_text(notes)
    if not text:
        raise ValidationFailed(["notes: required"])

    req = _load(request_id)
    _require_customer(req, actor)
    if req.status != STATUS_ACCEPTED:
        raise InvalidStateTransition(f"request {req.id} is {req.status}; revisions need an accepted commission")

    rev = _free_revision(req, text, actor)
    if rev is not None:
        logger.info("commission.revision.free", extra={"request_id": req.id, "revision": rev.revision_number})
        return {
            "request_id": req.id,
            "revision_id": rev.id,
            "revision_number": rev.revision_number,
            "is_extra": False,
            "revision_count": req.revision_count,
            "pending_confirmation": False,
        }

    fee = req.commission_type.price_per_revision
    if fee is None or fee <= 0:
        raise ConfigurationError(
            f"commission type {req.commission_type_id} has no price_per_revision",
            user_message="Extra revisions are not priced for this commission. Please contact the creator.",
        )

    waiting = CommissionRevision.query.filter_by(
        commission_request_id=req.id, status=REVISION_AWAITING_PAYMENT
    ).first()
    if waiting is not None and waiting.processor_payment_intent_id:
        intent = processor.retrieve_payment_intent(waiting.processor_payment_intent_id)
        return {
            "request_id": req.id,
            "revision_id": waiting.id,
            "is_extra": True,
            "fee_amount": _money(waiting.fee_amount),
            "payment_intent_id": waiting.processor_payment_intent_id,
            "client_secret": intent.get("client_secret") if intent.get("status") in REUSABLE_INTENT_STATUSES else None,
            "revision_count": req.revision_count,
            "pending_confirmation": True,
        }

    rev = waiting or CommissionRevision(
        commission_request_id=req.id,
        requester_id=actor.id,
        revision_number=req.revision_count + 1,
        notes=text,
        is_extra=True,
        fee_amount=fee,
        status=REVISION_AWAITING_PAYMENT,
    )
    db.session.add(rev)
    db.session.commit()

    customer_id = ensure_customer(actor, processor=processor)
    try:
        intent = processor.charge(
            to_minor_units(fee),
            customer_id=customer_id,
            metadata={
                "commission_request_id": str(req.id),
                "commission_revision_id": str(rev.id),
                "type": INTENT_TYPE_REVISION,
            },
            idempotency_key=make_idempotency_key("revision-fee", req.id, rev.id),
            description=f"Extra revision for commission #{req.id}",
        )
    except PaymentError:
        rev.status = REVISION_CANCELLED
        db.session.commit()
        raise

    rev.processor_payment_intent_id = intent["id"]
    db.session.commit()
    logger.info("commission.revision.fee_started", extra={"request_id": req.id, "intent_id": intent["id"]})
    return {
        "request_id": req.id,
        "revision_id": rev.id,
        "is_extra": True,
        "fee_amount": _money(fee),
        "payment_intent_id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "revision_count": req.revision_count,
        "pending_confirmation": True,
    }


def refund(request_id: int, *, actor, processor, reason: Optional[str] = None) -> Dict[str, Any]:
    req = _load(request_id)
    _require_creator(req, actor)

    if has_open_mismatch(KIND_COMMISSION, req.id):
        raise ReconciliationMismatch(f"request {req.id} has an unresolved processor mismatch; refund held")
    if not _claim(req.id, ACTION_REFUND, STATUS_ACCEPTED):
        db.session.refresh(req)
        raise InvalidStateTransition(
            f"request {req.id} status={req.status} pending_action={req.pending_action}; cannot refund"
        )

    intent_id = req.processor_payment_intent_id
    try:
        processor.refund(
            intent_id,
            idempotency_key=make_idempotency_key("commission", ACTION_REFUND, req.id, intent_id),
            reason=clean_str(reason, 500),
        )
    except PaymentError:
        _release(req.id, ACTION_REFUND)
        raise

    db.session.refresh(req)
    logger.info("commission.refund.started", extra={"request_id": req.id, "intent_id": intent_id})
    return {
        "request_id": req.id,
        "status": req.status,
        "pending_action": ACTION_REFUND,
        "pending_confirmation": True,
    }


def resubmit_commission(request_id: int, *, actor) -> int:
    """New pending request cloned from a rejected/failed one; the old row is untouched."""
    req = _load(request_id)
    _require_customer(req, actor)
    if req.status not in (STATUS_REJECTED, STATUS_PAYMENT_FAILED):
        raise InvalidStateTransition(f"request {req.id} is {req.status}; only rejected or failed requests resubmit")

    ctype = req.commission_type
    if ctype is None or not ctype.is_active:
        raise ValidationFailed(["commission_type_id: no longer offered"])

    new_req = CommissionRequest(
        customer_id=req.customer_id,
        creator_id=req.creator_id,
        commission_type_id=ctype.id,
        title=req.title,
        description=req.description,
        reference_images=list(req.reference_images or []),
        agreed_price=ctype.base_price,
        status=STATUS_PENDING,
        resubmitted_from_id=req.id,
    )
    db.session.add(new_req)
    db.session.commit()
    logger.info("commission.resubmitted", extra={"request_id": new_req.id, "from": req.id})
    return new_req.id


def get_commission(request_id: int, *, actor) -> Dict[str, Any]:
    req = _load(request_id)
    if not getattr(actor, "is_operator", False) and actor.id != req.customer_id:
        _require_creator(req, actor)
    return serialize_commission(req)


def _status_from_intent(intent: Dict[str, Any]) -> Optional[str]:
    """Commission status implied by the processor's view of the intent."""
    status = intent.get("status")
    if status == "requires_capture":
        return STATUS_PAYMENT_AUTHORIZED
    if status == "canceled":
        return STATUS_REJECTED
    if status == "succeeded":
        charge = intent.get("latest_charge")
        if isinstance(charge, dict) and charge.get("refunded"):
            return STATUS_REFUNDED
        return STATUS_ACCEPTED
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return STATUS_PAYMENT_FAILED
    return None


def reconcile_commission(request_id: int, *, processor) -> Dict[str, Any]:
    """
    Operator-triggered: pull the intent and apply the forward transition it
    implies. A processor state the lattice cannot reach is logged as a
    mismatch and left alone.
    """
    req = _load(request_id)
    result: Dict[str, Any] = {"request_id": req.id, "local_status": req.status, "processor_status": None,
                              "applied": False, "mismatch": False}
    if not req.processor_payment_intent_id:
        return result

    intent = processor.retrieve_payment_intent(req.processor_payment_intent_id)
    target = _status_from_intent(intent)
    result["processor_status"] = intent.get("status")

    if target is None:
        return result
    if target == req.status:
        # Processor never moved; a claim left behind by a lost call can go
        if req.pending_action:
            req.pending_action = None
            db.session.commit()
        return result

    if _advance(req.id, target, intent_id=req.processor_payment_intent_id):
        result["applied"] = True
        logger.info("commission.reconciled", extra={"request_id": req.id, "from": req.status, "to": target})
    else:
        _record_mismatch(req, req.processor_payment_intent_id, intent.get("status"),
                         f"processor implies {target}, local is {req.status}")
        result["mismatch"] = True
    db.session.commit()
    db.session.refresh(req)
    result["local_status"] = req.status
    return result


# ---- event handlers (run inside ledger.apply_once; never commit) ----

def _find_revision(intent_id: Optional[str], metadata: Dict[str, str]) -> Optional[CommissionRevision]:
    if intent_id:
        rev = CommissionRevision.query.filter_by(processor_payment_intent_id=intent_id).first()
        if rev is not None:
            return rev
    if metadata.get("type") == INTENT_TYPE_REVISION:
        rev_id = _int_or_none(metadata.get("commission_revision_id"))
        rev = db.session.get(CommissionRevision, rev_id) if rev_id else None
        if rev is not None and rev.processor_payment_intent_id is None and intent_id:
            rev.processor_payment_intent_id = intent_id
        return rev
    return None


def _find_request(intent_id: Optional[str], metadata: Dict[str, str]) -> Optional[CommissionRequest]:
    if intent_id:
        req = CommissionRequest.query.filter_by(processor_payment_intent_id=intent_id).first()
        if req is not None:
            return req
    if metadata.get("type") == INTENT_TYPE_COMMISSION:
        req_id = _int_or_none(metadata.get("commission_request_id"))
        return db.session.get(CommissionRequest, req_id) if req_id else None
    return None


def _apply(intent_id: Optional[str], metadata: Dict[str, str], target: str, *, money_moved: bool) -> str:
    req = _find_request(intent_id, metadata)
    if req is None:
        return "no matching commission"

    if intent_id and req.processor_payment_intent_id and req.processor_payment_intent_id != intent_id:
        # Event for an intent this request no longer points at
        if money_moved:
            _record_mismatch(req, intent_id, target, f"funds moved on non-current intent for request {req.id}")
            return f"mismatch: request {req.id} stale intent"
        return f"stale intent for request {req.id}; ignored"

    before = req.status
    if _advance(req.id, target, intent_id=intent_id):
        logger.info("commission.transition", extra={"request_id": req.id, "from": before, "to": target})
        return f"request {req.id}: {before} -> {target}"
    return f"request {req.id}: {before} unchanged ({target} not reachable)"


def on_payment_intent_succeeded(evt: PaymentIntentSucceeded) -> str:
    rev = _find_revision(evt.intent_id, evt.metadata)
    if rev is not None:
        rows = (
            CommissionRevision.query
            .filter(CommissionRevision.id == rev.id, CommissionRevision.status == REVISION_AWAITING_PAYMENT)
            .update({"status": REVISION_REQUESTED}, synchronize_session=False)
        )
        if rows != 1:
            return f"revision {rev.id} already settled"
        CommissionRequest.query.filter(CommissionRequest.id == rev.commission_request_id).update(
            {"revision_count": CommissionRequest.revision_count + 1}, synchronize_session=False
        )
        count = (
            db.session.query(CommissionRequest.revision_count)
            .filter(CommissionRequest.id == rev.commission_request_id)
            .scalar()
        )
        CommissionRevision.query.filter_by(id=rev.id).update({"revision_number": count}, synchronize_session=False)
        logger.info("commission.revision.paid", extra={"revision_id": rev.id, "revision_count": count})
        return f"revision {rev.id} paid; revision_count={count}"
    return _apply(evt.intent_id, evt.metadata, STATUS_PAYMENT_AUTHORIZED, money_moved=False)


def _settle_revision(rev: CommissionRevision, status: str) -> str:
    rows = (
        CommissionRevision.query
        .filter(CommissionRevision.id == rev.id, CommissionRevision.status == REVISION_AWAITING_PAYMENT)
        .update({"status": status}, synchronize_session=False)
    )
    return f"revision {rev.id} -> {status}" if rows else f"revision {rev.id} already settled"


def on_payment_intent_failed(evt: PaymentIntentFailed) -> str:
    rev = _find_revision(evt.intent_id, evt.metadata)
    if rev is not None:
        return _settle_revision(rev, REVISION_PAYMENT_FAILED)
    return _apply(evt.intent_id, evt.metadata, STATUS_PAYMENT_FAILED, money_moved=False)


def on_payment_intent_canceled(evt: PaymentIntentCanceled) -> str:
    rev = _find_revision(evt.intent_id, evt.metadata)
    if rev is not None:
        return _settle_revision(rev, REVISION_CANCELLED)
    return _apply(evt.intent_id, evt.metadata, STATUS_REJECTED, money_moved=False)


def on_charge_captured(evt: ChargeCaptured) -> str:
    if _find_revision(evt.intent_id, evt.metadata) is not None:
        return "revision fee charge; commission unchanged"
    return _apply(evt.intent_id, evt.metadata, STATUS_ACCEPTED, money_moved=True)


def on_charge_refunded(evt: ChargeRefunded) -> str:
    if _find_revision(evt.intent_id, evt.metadata) is not None:
        return "revision fee refunded; commission unchanged"
    if not evt.fully_refunded:
        return f"partial refund {evt.amount_refunded}/{evt.amount}; status unchanged"
    return _apply(evt.intent_id, evt.metadata, STATUS_REFUNDED, money_moved=True)
