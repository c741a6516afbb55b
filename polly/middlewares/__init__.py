from .request_id_middleware import *
from .security_middleware import *
from .auth_middleware import (
    AuthState,
    get_current_user,
    require_service,
    require_service_or_user,
)

__all__ = [
    "RequestIDMiddleware",
    "DevSecurityMiddleware",
    "ProdSecurityMiddleware",
    "AuthState",
    "get_current_user",
    "require_service",
    "require_service_or_user",
]
