"""External subscription provider integration."""

from membership_core.provider.client import SubscriptionProviderClient

__all__ = ["SubscriptionProviderClient"]
