# payments.py
# Stripe Checkout for course purchases + the webhook that records them.

import os
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import stripe
from flask import Blueprint, request, jsonify, g

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY") or ""
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET") or ""
STRIPE_CURRENCY = (os.getenv("STRIPE_CURRENCY") or "usd").lower()


def price_to_cents(price: Any) -> Optional[int]:
    """Whole-unit course price (e.g. 199 or "49.50") -> integer cents."""
    if price is None or isinstance(price, bool):
        return None
    try:
        cents = (Decimal(str(price)) * 100).quantize(Decimal("1"))
    except (InvalidOperation, ValueError):
        return None
    return int(cents) if cents > 0 else None


def create_payments_blueprint(base_path: str, deps: Dict[str, Any], name: str = "payments") -> Blueprint:
    """
    Required deps: fetch_one, execute, execute_returning, load_course_metadata, load_course_lessons
    Optional deps: rate_limit, app_url
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/api")

    fetch_one: Callable = deps["fetch_one"]
    execute: Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    load_course_metadata: Callable = deps["load_course_metadata"]
    load_course_lessons: Callable = deps["load_course_lessons"]
    rate_limit: Optional[Callable] = deps.get("rate_limit")
    app_url: str = (deps.get("app_url") or os.getenv("APP_URL") or "").rstrip("/")

    def _err(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    # ------------------------------ checkout ---------------------------------
    @bp.post("/checkout")
    def create_checkout():
        if rate_limit:
            limited = rate_limit("checkout")
            if limited:
                return limited
        data = request.get_json(silent=True) or {}
        slug = str(data.get("courseSlug") or "").strip() if isinstance(data, dict) else ""
        if not slug:
            return _err("Course slug is required", 400)
        meta = load_course_metadata(slug)
        if not meta:
            return _err("Course not found", 404)
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Authentication required", 401)

        existing = fetch_one("""
            SELECT id
              FROM public.purchases
             WHERE user_id = %s AND course_slug = %s AND status = 'completed'
             LIMIT 1;
        """, (user_id, slug))
        if existing:
            return _err("Course already purchased", 400)

        amount = price_to_cents(meta.get("price"))
        if amount is None:
            print(f"[payments] {slug}: missing or invalid price {meta.get('price')!r}")
            return _err("Course price is not configured", 500)
        if not STRIPE_SECRET_KEY:
            return _err("Payments are not configured", 503)

        base = app_url or request.host_url.rstrip("/")
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": STRIPE_CURRENCY,
                    "product_data": {
                        "name": meta.get("title") or slug,
                        "description": (meta.get("description") or "")[:500] or None,
                    },
                    "unit_amount": amount,
                },
                "quantity": 1,
            }],
            "success_url": f"{base}/courses/{slug}?purchase=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/courses/{slug}?purchase=cancelled",
            "metadata": {"courseSlug": slug, "userId": str(user_id)},
        }
        email = getattr(g, "user_email", None)
        if email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(api_key=STRIPE_SECRET_KEY, **params)
        except stripe.StripeError as e:
            print(f"[payments] checkout session failed for {slug}: {e}")
            return _err("Failed to create checkout session", 502)

        return jsonify({"ok": True, "sessionId": session["id"], "url": session["url"]})

    # ------------------------------ webhook ----------------------------------
    def _record_purchase(obj: Dict[str, Any]):
        metadata = obj.get("metadata") or {}
        slug = metadata.get("courseSlug")
        user_id = metadata.get("userId")
        if not slug or not user_id:
            print(f"[payments] session {obj.get('id')} has no course/user metadata; ignored")
            return jsonify({"received": True})

        try:
            rows = execute_returning("""
                INSERT INTO public.purchases
                    (user_id, course_slug, stripe_payment_intent_id, stripe_session_id,
                     amount_paid, currency, status, purchased_at)
                VALUES (%s, %s, %s, %s, %s, %s, 'completed', now())
                ON CONFLICT (stripe_session_id) DO NOTHING
                RETURNING id;
            """, (
                user_id, slug, obj.get("payment_intent"), obj.get("id"),
                obj.get("amount_total"), (obj.get("currency") or STRIPE_CURRENCY).lower(),
            ))
        except Exception as e:
            print(f"[payments] purchase insert failed for session {obj.get('id')}: {e}")
            return _err("Database error", 500)

        if not rows:
            print(f"[payments] session {obj.get('id')} already recorded")
            return jsonify({"received": True})

        try:
            execute("""
                INSERT INTO public.course_progress
                    (user_id, course_slug, lessons_completed, total_lessons,
                     progress_percentage, started_at, last_accessed)
                VALUES (%s, %s, '{}', %s, 0, now(), now())
                ON CONFLICT (user_id, course_slug) DO NOTHING;
            """, (user_id, slug, len(load_course_lessons(slug))))
        except Exception as e:
            print(f"[payments] progress init failed for {user_id}/{slug}: {e}")

        return jsonify({"received": True})

    @bp.post("/stripe/webhook")
    def stripe_webhook():
        payload = request.get_data()
        signature = request.headers.get("Stripe-Signature")
        if not signature:
            return _err("No signature", 400)
        if not STRIPE_WEBHOOK_SECRET:
            print("[payments] STRIPE_WEBHOOK_SECRET is not set")
            return _err("Webhook not configured", 500)
        try:
            event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
        except (ValueError, stripe.SignatureVerificationError) as e:
            print(f"[payments] webhook signature rejected: {e}")
            return _err("Invalid signature", 400)

        if event["type"] == "checkout.session.completed":
            return _record_purchase(event["data"]["object"])
        return jsonify({"received": True})

    return bp
