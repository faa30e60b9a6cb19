"""Re-export all models so Base.metadata sees them."""

from app.db.models.customer import PolarCustomer
from app.db.models.subscription import PolarSubscription
from app.db.models.user import User
from app.db.models.webhook_event import PolarWebhookEvent

__all__ = [
    "PolarCustomer",
    "PolarSubscription",
    "PolarWebhookEvent",
    "User",
]
