"""
Typed adapter over the Stripe API.

The adapter is constructed explicitly (``StripeProcessor.from_config``) and
stored on ``app.extensions["processor"]``; services receive it as an argument
so tests can inject a fake. Every call is bounded by the configured timeout,
never retried implicitly, and returns plain dicts.
"""
from __future__ import annotations

import hashlib
import json
import logging
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional

import stripe
from flask import current_app
from stripe import StripeClient

from .errors import (
    InvalidStateTransition,
    NotFound,
    PaymentError,
    PaymentSetupError,
    ProcessorRejected,
    ProcessorUnavailable,
)

logger = logging.getLogger(__name__)

# Stripe error codes meaning "the object is not in a state that allows this"
_STATE_ERROR_CODES = {
    "payment_intent_unexpected_state",
    "charge_already_captured",
    "charge_already_refunded",
    "charge_expired_for_capture",
}

REUSABLE_INTENT_STATUSES = {"requires_payment_method", "requires_confirmation", "requires_action"}


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "ch:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when fields change
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


def _plain(obj: Any) -> Any:
    """Stripe objects -> plain dicts (recursively)."""
    if obj is None:
        return None
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


def _translate(op: str):
    """Map stripe exceptions onto the payment error taxonomy; raw text stays in logs."""
    def deco(fn):
        @wraps(fn)
        def _wrap(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except PaymentError:
                raise
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                logger.warning("processor.%s.unavailable", op, extra={"error": str(e)})
                raise ProcessorUnavailable(f"{op}: {type(e).__name__}") from e
            except stripe.CardError as e:
                logger.info("processor.%s.card_error", op, extra={"code": getattr(e, "code", None)})
                raise PaymentSetupError(f"{op}: card_error {getattr(e, 'code', None)}") from e
            except stripe.InvalidRequestError as e:
                code = getattr(e, "code", None)
                logger.warning("processor.%s.invalid_request", op, extra={"code": code, "error": str(e)})
                if code in _STATE_ERROR_CODES:
                    raise InvalidStateTransition(f"{op}: {code}") from e
                if code == "resource_missing":
                    raise NotFound(f"{op}: resource_missing") from e
                raise ProcessorRejected(f"{op}: {code}") from e
            except stripe.StripeError as e:
                status = getattr(e, "http_status", None) or 0
                logger.error("processor.%s.error", op, extra={"http_status": status, "error": str(e)})
                if status >= 500 or isinstance(e, stripe.APIError):
                    raise ProcessorUnavailable(f"{op}: http {status}") from e
                raise ProcessorRejected(f"{op}: http {status}") from e
        return _wrap
    return deco


class StripeProcessor:
    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 10.0,
        max_network_retries: int = 0,
        currency: str = "usd",
    ):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        self.currency = currency
        self._client = StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=max_network_retries,
        )

    @classmethod
    def from_config(cls, config) -> "StripeProcessor":
        return cls(
            config.get("STRIPE_SECRET_KEY"),
            timeout=float(config.get("STRIPE_TIMEOUT_SECONDS", 10)),
            max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES", 0)),
            currency=config.get("PAYMENT_CURRENCY", "usd"),
        )

    # ---- payment intents ----

    @_translate("authorize")
    def authorize(self, amount_minor: int, *, customer_id: Optional[str], metadata: Dict[str, str],
                  idempotency_key: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Create a held (manual-capture) payment intent."""
        params: Dict[str, Any] = {
            "amount": int(amount_minor),
            "currency": self.currency,
            "capture_method": "manual",
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        intent = self._client.payment_intents.create(
            params=params, options={"idempotency_key": f"{idempotency_key}:{_params_hash(params)}"}
        )
        return _plain(intent)

    @_translate("charge")
    def charge(self, amount_minor: int, *, customer_id: Optional[str], metadata: Dict[str, str],
               idempotency_key: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Create an automatically captured payment intent (one-off fee)."""
        params: Dict[str, Any] = {
            "amount": int(amount_minor),
            "currency": self.currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        intent = self._client.payment_intents.create(
            params=params, options={"idempotency_key": f"{idempotency_key}:{_params_hash(params)}"}
        )
        return _plain(intent)

    @_translate("retrieve_payment_intent")
    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        return _plain(self._client.payment_intents.retrieve(intent_id, params={"expand": ["latest_charge"]}))

    @_translate("capture")
    def capture(self, intent_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return _plain(self._client.payment_intents.capture(intent_id, options={"idempotency_key": idempotency_key}))

    @_translate("cancel")
    def cancel(self, intent_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return _plain(self._client.payment_intents.cancel(intent_id, options={"idempotency_key": idempotency_key}))

    @_translate("refund")
    def refund(self, intent_id: str, *, idempotency_key: str, reason: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"payment_intent": intent_id, "reason": "requested_by_customer"}
        if reason:
            params["metadata"] = {"refund_reason": reason[:500]}
        return _plain(self._client.refunds.create(params=params, options={"idempotency_key": idempotency_key}))

    # ---- customers ----

    @_translate("find_or_create_customer")
    def find_or_create_customer(self, email: str, *, user_id: int) -> Dict[str, Any]:
        found = self._client.customers.list(params={"email": email, "limit": 1})
        if found.data:
            return _plain(found.data[0])
        customer = self._client.customers.create(
            params={"email": email, "metadata": {"user_id": str(user_id)}},
            options={"idempotency_key": make_idempotency_key("customer", user_id, email.lower())},
        )
        return _plain(customer)

    @_translate("retrieve_customer")
    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return _plain(self._client.customers.retrieve(customer_id))

    @_translate("set_default_payment_method")
    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> Dict[str, Any]:
        customer = self._client.customers.update(
            customer_id, params={"invoice_settings": {"default_payment_method": payment_method_id}}
        )
        return _plain(customer)

    # ---- subscriptions ----

    @_translate("create_subscription")
    def create_subscription(self, customer_id: str, price_id: str, *, metadata: Dict[str, str],
                            idempotency_key: str) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": metadata,
            "expand": ["latest_invoice.confirmation_secret"],
        }
        sub = self._client.subscriptions.create(params=params, options={"idempotency_key": idempotency_key})
        return _plain(sub)

    @_translate("retrieve_subscription")
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _plain(self._client.subscriptions.retrieve(subscription_id))

    @_translate("update_subscription_price")
    def update_subscription_price(self, subscription_id: str, item_id: str, price_id: str, *,
                                  idempotency_key: str, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Swap the tier price in a single processor update; proration is handled there."""
        params: Dict[str, Any] = {
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "always_invoice",
            "cancel_at_period_end": False,
        }
        if metadata:
            params["metadata"] = metadata
        sub = self._client.subscriptions.update(
            subscription_id, params=params, options={"idempotency_key": idempotency_key}
        )
        return _plain(sub)

    @_translate("set_cancel_at_period_end")
    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Dict[str, Any]:
        sub = self._client.subscriptions.update(subscription_id, params={"cancel_at_period_end": bool(flag)})
        return _plain(sub)

    @_translate("cancel_subscription")
    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _plain(self._client.subscriptions.cancel(subscription_id))

    @_translate("list_subscriptions")
    def list_subscriptions(self, price_id: str) -> List[Dict[str, Any]]:
        page = self._client.subscriptions.list(params={"price": price_id, "status": "all", "limit": 100})
        return [_plain(s) for s in page.auto_paging_iter()]

    # ---- payment methods ----

    @_translate("list_payment_methods")
    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        page = self._client.payment_methods.list(params={"customer": customer_id, "type": "card"})
        return [_plain(pm) for pm in page.auto_paging_iter()]

    @_translate("detach_payment_method")
    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return _plain(self._client.payment_methods.detach(payment_method_id))

    @_translate("create_setup_intent")
    def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        intent = self._client.setup_intents.create(
            params={"customer": customer_id, "usage": "off_session", "payment_method_types": ["card"]}
        )
        return _plain(intent)

    # ---- catalog ----

    @_translate("create_price")
    def create_price(self, amount_minor: int, *, product_name: str, metadata: Dict[str, str],
                     idempotency_key: str) -> Dict[str, Any]:
        price = self._client.prices.create(
            params={
                "unit_amount": int(amount_minor),
                "currency": self.currency,
                "recurring": {"interval": "month"},
                "product_data": {"name": product_name, "metadata": metadata},
                "metadata": metadata,
            },
            options={"idempotency_key": idempotency_key},
        )
        return _plain(price)

    @_translate("archive_price")
    def archive_price(self, price_id: str) -> Dict[str, Any]:
        return _plain(self._client.prices.update(price_id, params={"active": False}))


def get_processor():
    """The adapter instance bound to the current app."""
    processor = current_app.extensions.get("processor")
    if processor is None:
        raise RuntimeError("Payment processor is not configured")
    return processor


def object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return value or None


def iter_items(obj: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Yield ``items.data`` entries of a subscription dict."""
    items = (obj.get("items") or {}).get("data") or []
    for item in items:
        if isinstance(item, dict):
            yield item
