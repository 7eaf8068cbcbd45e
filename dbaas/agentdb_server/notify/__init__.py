"""
Change notification for AgentDB.

The notifier observes committed mutations and delivers them, in commit
order, to the targets of matching subscriptions.
"""

from .notifier import ChangeNotifier, DeliveryTarget, Notification, Subscription, new_subscription_id
from .targets import (
    ActorTarget,
    CallbackTarget,
    QueueTarget,
    StreamTarget,
    TargetRegistry,
    WebhookTarget,
)

__all__ = [
    "ChangeNotifier",
    "DeliveryTarget",
    "Notification",
    "Subscription",
    "new_subscription_id",
    "ActorTarget",
    "CallbackTarget",
    "QueueTarget",
    "StreamTarget",
    "TargetRegistry",
    "WebhookTarget",
]
