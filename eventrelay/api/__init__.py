"""
eventrelay Operations API

Health and outbox operator endpoints.
"""

from .main import create_app
from .ops import router as ops_router

__all__ = ["create_app", "ops_router"]
