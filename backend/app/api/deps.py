"""Shared API dependencies: single import point for all routers.

Re-exports database, authentication, and billing dependencies so that
router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    require_admin,
)
from app.billing.dependencies import get_billing_provider, require_active_subscription
from app.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "require_admin",
    "get_billing_provider",
    "require_active_subscription",
]
