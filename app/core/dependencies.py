from fastapi import Header, Request

from app.core.exceptions import UnauthorizedError
from app.core.security import decode_access_token
from app.services.container import Services


async def get_current_user_id(
    authorization: str | None = Header(None, description="Bearer <token>"),
) -> str:
    """Caller identity from the bearer token. Runs before any request validation."""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError()

    user_id = decode_access_token(authorization[7:])
    if not user_id:
        raise UnauthorizedError()
    return user_id


def get_services(request: Request) -> Services:
    return request.app.state.services
