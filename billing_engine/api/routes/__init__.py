# API Routes Module
from billing_engine.api.routes import (
    admin,
    plans,
    subscriptions,
    webhooks,
)

__all__ = [
    "admin",
    "plans",
    "subscriptions",
    "webhooks",
]
