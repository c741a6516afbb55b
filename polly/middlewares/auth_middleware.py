from typing import Optional
from fastapi import Request

from polly.utils.auth import AuthUtils
from polly.utils.errors import AuthenticationError, AuthorizationError
from polly.utils.logging import get_logger

logger = get_logger()

SERVICE_PRINCIPAL = "service"


class AuthState:
    """Authentication state to be stored in request.state"""

    def __init__(
        self,
        user_id: str,
        email: Optional[str] = None,
        is_service: bool = False,
        is_authenticated: bool = True,
    ):
        self.user_id = user_id
        self.email = email
        self.is_service = is_service
        self.is_authenticated = is_authenticated


def _authenticate(request: Request) -> AuthState:
    token = AuthUtils.extract_bearer_token(request.headers.get("authorization"))
    if not token:
        raise AuthenticationError("No authorization token provided")

    if AuthUtils.is_service_token(token):
        state = AuthState(user_id=SERVICE_PRINCIPAL, is_service=True)
    else:
        payload = AuthUtils.verify_access_token(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        state = AuthState(user_id=str(payload["sub"]), email=payload.get("email"))

    request.state.auth = state
    return state


async def get_current_user(request: Request) -> AuthState:
    """Dependency: an end user authenticated with a JWT"""
    state = _authenticate(request)
    if state.is_service:
        raise AuthorizationError("This endpoint requires a user token")
    return state


async def require_service_or_user(request: Request) -> AuthState:
    """Dependency: the shared service credential or any valid user JWT"""
    return _authenticate(request)


async def require_service(request: Request) -> AuthState:
    """Dependency: the shared service credential only"""
    state = _authenticate(request)
    if not state.is_service:
        logger.warning("Rejected non-service caller", user_id=state.user_id)
        raise AuthorizationError("This endpoint requires the service credential")
    return state
