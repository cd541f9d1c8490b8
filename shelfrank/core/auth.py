"""
Caller identification.

Authentication happens upstream; the proxy in front of this service forwards
the authenticated user id in the X-User-Id header.
"""
import logging

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def _unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_current_user_id(request: Request) -> str:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        logger.debug("Rejected %s %s: missing %s", request.method, request.url.path, USER_ID_HEADER)
        raise _unauthorized(f"Missing {USER_ID_HEADER} header")
    return user_id
