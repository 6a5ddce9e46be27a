from examengine.auth.dependencies import get_current_user, get_optional_user
from examengine.auth.jwt_handler import TokenPayload, create_access_token, verify_token

__all__ = ["TokenPayload", "create_access_token", "get_current_user", "get_optional_user", "verify_token"]
