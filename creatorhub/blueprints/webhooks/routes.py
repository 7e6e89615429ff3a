from flask import request, jsonify, current_app
from . import bp
from creatorhub.extensions import csrf, limiter
from creatorhub.services.errors import MalformedEvent, PaymentError, SignatureInvalid
from creatorhub.services.processor import get_processor
from creatorhub.services.webhooks import handle_event

@csrf.exempt
@limiter.exempt
@bp.post("/payments")
def payments_webhook():
    """
    Processor -> /webhooks/payments
    200: processed, duplicate or ignored. 400: bad signature/payload (no retry).
    500: anything else, so the processor redelivers.
    """
    cfg = current_app.config
    raw_bytes = request.get_data(cache=False, as_text=False)

    try:
        body = handle_event(
            raw_bytes,
            request.headers.get("Stripe-Signature"),
            secret=cfg.get("STRIPE_WEBHOOK_SECRET"),
            tolerance=int(cfg.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
            processor=get_processor(),
        )
    except (SignatureInvalid, MalformedEvent) as e:
        current_app.logger.warning("webhook.rejected code=%s detail=%s", e.code, e.detail)
        return jsonify(e.to_dict()), e.http_status
    except PaymentError as e:
        current_app.logger.error("webhook.retryable code=%s detail=%s", e.code, e.detail)
        return jsonify({"error": "retry_later", "code": e.code}), 500

    return jsonify(body), 200
