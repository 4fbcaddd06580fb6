"""Webhooks blueprint - /api/webhook

Receives Stripe and SendGrid webhook events.
Raw body is required for signature verification.
"""

import json
import logging

import stripe
from flask import Blueprint, current_app, jsonify, request

from catalyst.services.newsletter_service import (
    process_email_events,
    verify_sendgrid_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhook")


@webhooks_bp.route("", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Apply the event to the ledger (idempotent via stripe_events)
    4. 200 acknowledges; 500 makes Stripe redeliver
    """
    reconciler = current_app.extensions["reconciler"]
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    # --- Verify signature ---
    try:
        event = reconciler.verify_event(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return f"Webhook Error: {e}", 400, {"Content-Type": "text/plain; charset=utf-8"}

    # --- Process event (idempotent) ---
    success, message = reconciler.handle_event(event)

    if success:
        return jsonify({"received": True}), 200

    logger.error(f"Webhook processing failed for {event['id']}: {message}")
    # Handler errors can carry SQL text and parameters
    if current_app.config.get("APP_ENV") == "production":
        message = "Webhook handler failed"
    return jsonify({"error": message}), 500


@webhooks_bp.route("/sendgrid", methods=["POST"])
def sendgrid_webhook():
    """SendGrid Event Webhook: unsubscribes, bounces, spam reports."""
    payload = request.get_data()
    signature = request.headers.get("X-Twilio-Email-Event-Webhook-Signature")
    timestamp = request.headers.get("X-Twilio-Email-Event-Webhook-Timestamp")
    signing_key = current_app.config.get("SENDGRID_WEBHOOK_SIGNING_KEY")

    if not signature or not timestamp or not signing_key:
        return jsonify({"error": "Missing webhook verification headers"}), 401

    if not verify_sendgrid_signature(payload, signature, timestamp, signing_key):
        logger.warning("SendGrid webhook signature mismatch")
        return jsonify({"error": "Invalid webhook signature"}), 401

    try:
        events = json.loads(payload)
    except ValueError:
        return jsonify({"error": "Invalid payload"}), 400
    if isinstance(events, dict):
        events = [events]

    count = process_email_events(
        events, current_app.config.get("NEWSLETTER_UNSUBSCRIBE_GROUP_ID")
    )
    logger.info(f"Processed {len(events)} SendGrid events ({count} unsubscribes)")
    return jsonify({"received": True}), 200
