# api/__init__.py
from api.server import (
    app,
    get_checkout_intake,
)

__all__ = [
    "app",
    "get_checkout_intake",
]
