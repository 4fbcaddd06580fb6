"""Newsletter blueprint - /api/newsletter/*"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from catalyst.errors import ValidationError
from catalyst.extensions import db
from catalyst.services import newsletter_service

logger = logging.getLogger(__name__)

newsletter_bp = Blueprint("newsletter", __name__, url_prefix="/api/newsletter")


@newsletter_bp.route("/subscribe", methods=["POST"])
def subscribe():
    data = request.get_json(silent=True) or {}
    try:
        subscriber, created = newsletter_service.subscribe(
            data.get("email"), data.get("name"), data.get("source")
        )
    except ValidationError as e:
        return jsonify({"success": False, "message": e.message}), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Newsletter subscription error: {e}", exc_info=True)
        return jsonify({
            "success": False,
            "message": "Failed to process newsletter subscription",
        }), 500

    if created:
        return jsonify({
            "success": True,
            "message": "Successfully subscribed to newsletter",
            "data": subscriber.to_dict(),
        }), 201

    return jsonify({
        "success": True,
        "message": "Welcome back! Your newsletter subscription has been reactivated",
        "data": subscriber.to_dict(),
    }), 200
