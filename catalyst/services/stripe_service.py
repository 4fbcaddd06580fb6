"""Stripe service - checkout and subscription management calls.

Responsible for:
- Creating Stripe Checkout Sessions (subscription mode)
- Cancelling at period end and stamping the local row
- Verifying a completed checkout session for the success page
- Reading the customer's card and creating card setup intents
- Re-pulling one subscription from Stripe (CLI re-convergence)

Webhook handling lives in reconciliation_service.
"""

import logging
from urllib.parse import urlparse

import stripe
from sqlalchemy.exc import SQLAlchemyError

from catalyst.errors import LedgerWriteError, NotFoundError, UnauthorizedError, ValidationError
from catalyst.services.reconciliation_service import extract_period_end

logger = logging.getLogger(__name__)

PRODUCTION_FRONTEND_URL = "https://themonetarycatalyst.com"
DEV_FRONTEND_URL = "http://localhost:3000"


def resolve_frontend_url(frontend_url, environment):
    """Base URL for checkout redirects.

    Production trusts FRONTEND_URL as given and only falls back when it is
    unset; elsewhere an unset or malformed value falls back to localhost.
    """
    if environment == "production":
        if not frontend_url:
            logger.warning("FRONTEND_URL not set in production environment")
            return PRODUCTION_FRONTEND_URL
        return frontend_url

    if not frontend_url:
        logger.warning("FRONTEND_URL not set, using default")
        return DEV_FRONTEND_URL

    parsed = urlparse(frontend_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        logger.warning(f"Invalid FRONTEND_URL format: {frontend_url}, using default")
        return DEV_FRONTEND_URL
    return frontend_url.rstrip("/")


def card_summary(payment_method):
    if not payment_method or isinstance(payment_method, str):
        return None
    card = payment_method.get("card")
    if not card:
        return None
    return {
        "last4": card.get("last4"),
        "brand": card.get("brand"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }


# Stripe subscription status -> (local status, local payment_status)
PROVIDER_STATUS_MAP = {
    "active": ("active", "active"),
    "trialing": ("active", "active"),
    "past_due": ("inactive", "failed"),
    "unpaid": ("inactive", "failed"),
    "incomplete": ("inactive", "failed"),
    "incomplete_expired": ("expired", "cancelled"),
    "canceled": ("expired", "cancelled"),
    "paused": ("inactive", "failed"),
}


class BillingService:
    """User-initiated billing operations.

    Args:
        billing:      StripeClient.
        store:        LedgerStore.
        frontend_url: FRONTEND_URL as configured (may be empty).
        environment:  APP_ENV, recorded on checkout metadata.
    """

    def __init__(self, billing, store, frontend_url=None, environment="development"):
        self.billing = billing
        self.store = store
        self.environment = environment
        self.frontend_url = resolve_frontend_url(frontend_url, environment)

    # --- Customers ---

    def _create_customer(self, user):
        params = {"metadata": {"userId": user.id}}
        if user.email:
            params["email"] = user.email
        customer = self.billing.customers.create(params=params)
        self.store.get_or_create_profile(user.id, user.email)
        self.store.set_stripe_customer(user.id, customer.id)
        logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
        return customer.id

    def _require_customer_id(self, user_id, message):
        profile = self.store.get_profile(user_id)
        if not profile or not profile.stripe_customer_id:
            raise NotFoundError(message)
        return profile.stripe_customer_id

    # --- Checkout ---

    def create_checkout_session(self, user, price_id):
        """Create a subscription-mode Checkout Session. Returns its URL."""
        if user is None or not getattr(user, "id", None):
            raise UnauthorizedError()
        if not price_id:
            raise ValidationError("priceId is required")

        profile = self.store.get_profile(user.id)
        customer_id = profile.stripe_customer_id if profile else None
        if not customer_id:
            customer_id = self._create_customer(user)

        def _create_session(cid):
            return self.billing.checkout.sessions.create(params={
                "mode": "subscription",
                "payment_method_types": ["card"],
                "customer": cid,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": (
                    f"{self.frontend_url}/success"
                    f"?session_id={{CHECKOUT_SESSION_ID}}"
                ),
                "cancel_url": f"{self.frontend_url}/pricing",
                "client_reference_id": user.id,
                "metadata": {"userId": user.id, "environment": self.environment},
            })

        try:
            session = _create_session(customer_id)
        except stripe.InvalidRequestError as e:
            # Stored customer may be from Test mode or another account
            if "No such customer" in str(e):
                logger.warning(f"Stored customer {customer_id} unknown to Stripe, recreating")
                session = _create_session(self._create_customer(user))
            else:
                raise

        logger.info(f"Checkout session {session.id} created for user {user.id}")
        return session.url

    # --- Cancellation ---

    def cancel_subscription(self, user_id):
        """Cancel at period end; access continues until end_date."""
        if not user_id:
            raise UnauthorizedError()

        customer_id = self._require_customer_id(user_id, "No customer profile found")

        listed = self.billing.subscriptions.list(params={
            "customer": customer_id,
            "status": "active",
            "limit": 1,
        })
        data = listed.get("data") or []
        if not data:
            raise NotFoundError("No active subscription found in Stripe")
        stripe_subscription_id = data[0]["id"]

        if self.store.get_subscription(stripe_subscription_id) is None:
            logger.error(
                f"No subscription found in database for stripe_subscription_id {stripe_subscription_id}"
            )
            raise NotFoundError("No subscription found in database")

        logger.info(f"Cancelling Stripe subscription {stripe_subscription_id} for user {user_id}")
        self.billing.subscriptions.update(
            stripe_subscription_id,
            params={"cancel_at_period_end": True},
        )

        try:
            self.store.mark_cancel_requested(stripe_subscription_id)
        except SQLAlchemyError as e:
            # Stripe already accepted the cancellation; the local row is
            # behind until `flask sync-subscription` or the deleted event.
            logger.error(
                f"Subscription {stripe_subscription_id} cancelled in Stripe but "
                f"local update failed: {e}",
                exc_info=True,
            )
            raise LedgerWriteError("Failed to update subscription status")

    # --- Session verification ---

    def verify_session(self, session_id):
        if not session_id:
            raise ValidationError("Invalid session ID")

        session = self.billing.checkout.sessions.retrieve(session_id)
        status = session.get("status")
        payment_status = session.get("payment_status")
        logger.info(
            f"Verifying session {session_id}: status={status} payment_status={payment_status}"
        )

        if payment_status == "paid" and status == "complete":
            local = None
            stripe_subscription_id = session.get("subscription")
            if stripe_subscription_id:
                local = self.store.get_subscription(stripe_subscription_id)
            return {
                "success": True,
                "status": status,
                "paymentStatus": payment_status,
                "subscription": local.to_dict() if local else None,
            }

        return {
            "success": False,
            "message": "Payment incomplete",
            "status": status,
            "paymentStatus": payment_status,
        }

    # --- Payment methods ---

    def get_payment_method(self, user_id):
        """Card summary dict for the customer's default card, or None."""
        customer_id = self._require_customer_id(user_id, "No payment method found")

        customer = self.billing.customers.retrieve(
            customer_id,
            params={"expand": ["invoice_settings.default_payment_method"]},
        )
        if customer.get("deleted"):
            raise NotFoundError("Customer not found or deleted")

        invoice_settings = customer.get("invoice_settings") or {}
        payment_method = invoice_settings.get("default_payment_method")
        if not payment_method:
            methods = self.billing.payment_methods.list(
                params={"customer": customer_id, "type": "card"}
            )
            listed = methods.get("data") or []
            payment_method = listed[0] if listed else None

        return card_summary(payment_method)

    def create_setup_intent(self, user_id):
        """Card SetupIntent for the customer. Returns its client secret."""
        customer_id = self._require_customer_id(user_id, "User not found")

        setup_intent = self.billing.setup_intents.create(params={
            "customer": customer_id,
            "payment_method_types": ["card"],
            "metadata": {"userId": user_id},
        })
        client_secret = setup_intent.get("client_secret")
        if not client_secret:
            raise RuntimeError("Failed to create setup intent")
        return client_secret

    # --- Re-convergence ---

    def sync_subscription(self, stripe_subscription_id):
        """Rewrite the local row from Stripe's current view.

        Returns the updated Subscription, or None if there is no local row.
        """
        sub = self.billing.subscriptions.retrieve(stripe_subscription_id)
        provider_status = sub.get("status")
        status, payment_status = PROVIDER_STATUS_MAP.get(
            provider_status, ("inactive", "failed")
        )
        local = self.store.apply_provider_state(
            stripe_subscription_id,
            status=status,
            payment_status=payment_status,
            end_date=extract_period_end(sub),
        )
        if local is None:
            logger.warning(f"sync: no local record for sub={stripe_subscription_id}")
            return None
        if sub.get("cancel_at_period_end") and local.cancelled_at is None:
            self.store.mark_cancel_requested(stripe_subscription_id)
        logger.info(
            f"Synced subscription {stripe_subscription_id}: provider={provider_status} "
            f"local={status}/{payment_status}"
        )
        return local
