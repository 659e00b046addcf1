"""Authentication and role checks."""
from classarena.security.rbac import Caller, create_access_token, get_caller, get_current_user, require_teacher

__all__ = ["Caller", "create_access_token", "get_caller", "get_current_user", "require_teacher"]
