"""FastAPI auth dependencies.

Learn: get_credential pulls the bearer token out of the Authorization
header without judging it. require_internal_caller runs the dispatcher's
gate check on it and is attached to every internal router, so it fires
before FastAPI validates the request body.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from threadqueue.dispatch.dispatcher import ThreadDispatcher, get_dispatcher
from threadqueue.dispatch.errors import Unauthorized


def get_credential(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Bearer token from the Authorization header, or None."""
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


def unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail="Internal service credential required",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_internal_caller(
    credential: Optional[str] = Depends(get_credential),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
) -> str:
    """Reject the request with 401 unless it carries the internal secret."""
    try:
        dispatcher.gate.authorize(credential)
    except Unauthorized:
        raise unauthorized()
    return credential
