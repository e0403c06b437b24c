# API Routes Module
from app.api.routes import (
    billing,
    webhooks,
)

__all__ = [
    "billing",
    "webhooks",
]
