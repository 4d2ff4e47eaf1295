"""Routers package."""

from . import (
    health,
    auth,
    billing,
    generate,
    webhooks,
)
