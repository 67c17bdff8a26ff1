"""Dispatch gate — admission checks that run before any state change.

Learn: authorize() compares the caller's credential against the shared internal
secret in constant time. validate_user() must run before any queue
inspection, so unknown and malformed users are rejected identically.
"""

import secrets
from typing import Optional

from threadqueue.dispatch.errors import InvalidTarget, Unauthorized
from threadqueue.dispatch.store import WorkItemStore


class DispatchGate:
    def __init__(self, store: WorkItemStore, secret: str):
        if not secret:
            raise ValueError("DispatchGate requires a non-empty internal secret")
        self.store = store
        self._secret = secret

    def authorize(self, credential: Optional[str]) -> None:
        if not credential or not secrets.compare_digest(
            credential.encode(), self._secret.encode()
        ):
            raise Unauthorized("Internal service credential required")

    async def validate_user(self, user_id: Optional[str]) -> None:
        if not user_id or not await self.store.user_exists(user_id):
            raise InvalidTarget(f"Unknown user: {user_id!r}")
