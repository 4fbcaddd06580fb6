import os
import logging

import click
import stripe
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from catalyst.config import config_by_name
from catalyst.errors import CatalystError
from catalyst.extensions import db, migrate, login_manager, limiter, email_queue


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)
    email_queue.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from catalyst import models  # noqa: F401

    # --- Collaborators, built once and injected ---
    init_services(app)

    # --- Register blueprints ---
    from catalyst.blueprints.auth import auth_bp
    from catalyst.blueprints.payments import payments_bp
    from catalyst.blueprints.webhooks import webhooks_bp
    from catalyst.blueprints.newsletter import newsletter_bp
    from catalyst.blueprints.contact import contact_bp

    api_limit = app.config["API_RATE_LIMIT"]
    for bp in (payments_bp, webhooks_bp, newsletter_bp):
        limiter.limit(api_limit)(bp)

    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(newsletter_bp)
    app.register_blueprint(contact_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy"})

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only; nothing here should ever be rendered as a page
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))

    return app


def init_services(app):
    """Build the Stripe/identity clients and the services that use them."""
    from catalyst.services.billing_service import LedgerStore
    from catalyst.services.identity_service import SupabaseIdentityClient
    from catalyst.services.reconciliation_service import PaymentReconciler
    from catalyst.services.retry import RetryPolicy
    from catalyst.services.stripe_service import BillingService

    billing = stripe.StripeClient(app.config["STRIPE_SECRET_KEY"] or "sk_unset")
    store = LedgerStore(db)

    app.extensions["identity"] = SupabaseIdentityClient(
        app.config["SUPABASE_URL"],
        app.config["SUPABASE_SERVICE_KEY"],
        app.config.get("SUPABASE_ANON_KEY"),
    )
    app.extensions["reconciler"] = PaymentReconciler(
        billing=billing,
        store=store,
        mailer=email_queue,
        webhook_secret=app.config["STRIPE_WEBHOOK_SECRET"],
        retry_policy=RetryPolicy.from_config(app.config),
    )
    app.extensions["billing_service"] = BillingService(
        billing=billing,
        store=store,
        frontend_url=app.config.get("FRONTEND_URL"),
        environment=app.config["APP_ENV"],
    )


def register_error_handlers(app):
    """JSON bodies for every error; this API never renders HTML."""

    @app.errorhandler(CatalystError)
    def catalyst_error(e):
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.name}), e.code

    @app.errorhandler(429)
    def ratelimited(e):
        return jsonify({"error": "Too many requests, please try again later."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("sync-subscription")
    @click.argument("stripe_subscription_id")
    def sync_subscription(stripe_subscription_id):
        """Re-pull one subscription from Stripe and rewrite the local row.

        Usage:
            flask sync-subscription sub_123
        """
        service = app.extensions["billing_service"]
        sub = service.sync_subscription(stripe_subscription_id)
        if sub is None:
            click.echo(f"No local subscription for {stripe_subscription_id}.")
            return
        click.echo(
            f"{stripe_subscription_id}: status={sub.status} "
            f"payment_status={sub.payment_status} "
            f"end_date={sub.end_date.isoformat() if sub.end_date else '-'}"
        )

    @app.cli.command("verify-stripe-price")
    @click.argument("price_id")
    def verify_stripe_price(price_id):
        """Verify a Stripe price ID exists and matches the key's mode (Live/Test)."""
        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")

        billing = app.extensions["billing_service"].billing
        try:
            price = billing.prices.retrieve(price_id, params={"expand": ["product"]})
        except stripe.InvalidRequestError as e:
            click.echo(f"  {price_id}: ERROR: {e}")
            return

        product = price.get("product")
        product_active = product.get("active", "?") if hasattr(product, "get") else "?"
        recurring = price.get("recurring") or {}
        livemode = price.get("livemode")
        click.echo(f"  {price_id}: exists=True, livemode={livemode}, product_active={product_active}")
        click.echo(f"    interval={recurring.get('interval', 'one_time')}")
        if livemode is True and key_mode != "Live":
            click.echo("    WARNING: This price is Live but your key is Test.")
        elif livemode is False and key_mode == "Live":
            click.echo("    WARNING: This price is Test but your key is Live.")

    @app.cli.command("send-test-email")
    @click.argument("to")
    def send_test_email(to):
        """Send the welcome email synchronously to check SMTP settings."""
        with app.test_request_context():
            ok = email_queue.send_now(
                to=to,
                subject="Monetary Catalyst SMTP test",
                template="emails/welcome.html",
                context={"name": "there"},
            )
        click.echo("Sent." if ok else "Failed; see log output.")
