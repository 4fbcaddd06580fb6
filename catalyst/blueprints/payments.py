"""Payments blueprint - /api/*

Checkout and subscription management for the logged-in user.

Routes:
- POST /api/create-checkout-session  - Stripe Checkout URL for a price
- POST /api/cancel-subscription      - cancel at period end
- GET  /api/verify-session           - success-page check of a checkout session
- GET  /api/payment-method           - current card summary
- POST /api/create-setup-intent      - client secret for a card update

Service errors (CatalystError) propagate to the app-level handler; anything
else becomes the route's documented 500 body.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from catalyst.errors import CatalystError

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api")


def _billing():
    return current_app.extensions["billing_service"]


def _server_error(error, message, exc):
    body = {"error": error}
    if current_app.config.get("APP_ENV") != "production":
        body["details"] = str(exc)
    logger.error(f"{message}: {exc}", exc_info=True)
    return jsonify(body), 500


@payments_bp.route("/create-checkout-session", methods=["POST"])
@login_required
def create_checkout_session():
    data = request.get_json(silent=True) or {}
    price_id = data.get("priceId")
    try:
        url = _billing().create_checkout_session(current_user, price_id)
    except CatalystError:
        raise
    except Exception as e:
        return _server_error(
            "Failed to create checkout session",
            f"Error creating checkout session for user {current_user.id} price {price_id}",
            e,
        )
    return jsonify({"url": url})


@payments_bp.route("/cancel-subscription", methods=["POST"])
@login_required
def cancel_subscription():
    try:
        _billing().cancel_subscription(current_user.id)
    except CatalystError:
        raise
    except Exception as e:
        return _server_error(
            "Failed to cancel subscription",
            f"Error cancelling subscription for user {current_user.id}",
            e,
        )
    return jsonify({"success": True})


@payments_bp.route("/verify-session")
@login_required
def verify_session():
    """Called by the success page after Stripe redirects back."""
    session_id = request.args.get("session_id")
    try:
        result = _billing().verify_session(session_id)
    except CatalystError as e:
        return jsonify({"success": False, "error": e.message}), e.status_code
    except Exception as e:
        logger.error(f"Session verification error for {session_id}: {e}", exc_info=True)
        return jsonify({"success": False, "error": "Failed to verify session"}), 500
    return jsonify(result)


@payments_bp.route("/payment-method")
@login_required
def payment_method():
    try:
        card = _billing().get_payment_method(current_user.id)
    except CatalystError:
        raise
    except Exception as e:
        return _server_error(
            "Failed to fetch payment method",
            f"Error fetching payment method for user {current_user.id}",
            e,
        )
    return jsonify({"card": card})


@payments_bp.route("/create-setup-intent", methods=["POST"])
@login_required
def create_setup_intent():
    try:
        client_secret = _billing().create_setup_intent(current_user.id)
    except CatalystError:
        raise
    except Exception as e:
        return _server_error(
            "Failed to create setup intent",
            f"Error creating setup intent for user {current_user.id}",
            e,
        )
    return jsonify({"clientSecret": client_secret})
