"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from catalyst.services.email_service import EmailQueue

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
email_queue = EmailQueue()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit - applied per blueprint / route
    storage_uri="memory://",
)

# Bearer tokens only; no cookie sessions are ever established.
login_manager.session_protection = None


@login_manager.request_loader
def load_user_from_request(request):
    """Resolve the Authorization header to an AuthenticatedUser.

    Imports lazily to avoid circular deps.
    """
    from catalyst.services.auth_service import user_from_authorization_header

    return user_from_authorization_header(request.headers.get("Authorization"))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Unauthorized"}), 401
