"""
Contact form blueprint.

Handles the website contact form: verifies the reCAPTCHA token and
sends a notification to the support inbox.
"""

import logging

import requests
from flask import Blueprint, jsonify, request, current_app

from catalyst.extensions import email_queue, limiter
from catalyst.services.email_service import send_contact_form_email

contact_bp = Blueprint("contact", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


def verify_recaptcha(token, secret, min_score):
    """Returns (ok, details). Network or API errors count as failure."""
    try:
        resp = requests.post(
            RECAPTCHA_VERIFY_URL,
            data={"secret": secret, "response": token},
            timeout=10,
        )
        resp.raise_for_status()
        result = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f"reCAPTCHA verification error: {e}")
        return False, str(e)

    score = result.get("score")
    if not result.get("success") or (score is not None and score < min_score):
        logger.warning(f"reCAPTCHA verification failed: {result}")
        return False, result
    return True, result


@contact_bp.route("/contact", methods=["POST"])
@limiter.limit("5 per hour")
def send_contact():
    """
    Accept a JSON contact form submission.

    Expects: { name, email, message, recaptchaToken }
    Returns: { success: true, message } or { error, details }
    """
    data = request.get_json(silent=True) or {}

    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip()
    message = (data.get("message") or "").strip()
    token = (data.get("recaptchaToken") or "").strip()

    # --- Validation ---
    if not name or not email or not message or not token:
        return jsonify({
            "error": "Missing required fields",
            "details": {
                "name": None if name else "Name is required",
                "email": None if email else "Email is required",
                "message": None if message else "Message is required",
                "recaptchaToken": None if token else "reCAPTCHA token is required",
            },
        }), 400

    secret = current_app.config.get("RECAPTCHA_SECRET_KEY")
    if not secret:
        logger.error("RECAPTCHA_SECRET_KEY not configured")
        return jsonify({"error": "Server configuration error"}), 500

    ok, details = verify_recaptcha(
        token, secret, current_app.config.get("RECAPTCHA_MIN_SCORE", 0.5)
    )
    if not ok:
        return jsonify({"error": "reCAPTCHA verification failed", "details": details}), 400

    # --- Send notification (reply-to = the visitor) ---
    send_contact_form_email(
        email_queue,
        to=current_app.config["MAIL_CONTACT_TO"],
        name=name,
        email=email,
        message=message,
    )

    logger.info(f"Contact form submitted by {name} <{email}>")
    return jsonify({"success": True, "message": "Email sent successfully"}), 200
