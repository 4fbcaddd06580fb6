# Models package - import all models here so Alembic can discover them.

from catalyst.models.user_profile import UserProfile  # noqa: F401
from catalyst.models.billing import Subscription, Payment  # noqa: F401
from catalyst.models.newsletter import NewsletterSubscriber  # noqa: F401
from catalyst.models.stripe_event import StripeEvent  # noqa: F401
