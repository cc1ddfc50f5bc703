"""Shared FastAPI dependencies: authentication and the progression store."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from progression.core.config import SETTINGS
from progression.db.engine import async_session_factory, session_scope
from progression.models.principal import Principal
from progression.repos.pg_progression_store import PgProgressionStore
from progression.repos.progression_store import (
    InMemoryProgressionStore,
    ProgressionStore,
    seed_sample_catalog,
)
from progression.services import token_service

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# In-memory store used whenever DATABASE_URL is unset.  Tests replace its
# contents through the autouse fixture in tests/conftest.py.
memory_store = InMemoryProgressionStore()
if SETTINGS.is_dev and async_session_factory is None:
    seed_sample_catalog(memory_store)


def require_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
    ],
) -> Principal:
    """Validate the identity provider's bearer JWT.  Returns a Principal."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = token_service.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    principal = Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )
    logger.debug(
        "Token validated for user=%s roles=%s", principal.user_id, principal.roles
    )
    return principal


def require_role(role: str):
    """Dependency factory: demand a specific role.

    Usage: Depends(require_role("admin"))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_role(role):
            logger.warning(
                "Access denied: user=%s missing role=%s", principal.user_id, role
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


class AfterCommit:
    """Callbacks to run once the request's unit of work has committed.

    Request-scoped: FastAPI caches the dependency per request, so the
    endpoint and get_store see the same instance.  Nothing runs when the
    endpoint raises and the session rolls back.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], Awaitable[None]]] = []

    def add(self, callback: Callable[[], Awaitable[None]]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    async def run(self) -> None:
        for callback in self._callbacks:
            try:
                await callback()
            except Exception:
                # The write is already durable; a failed hook (e.g. Redis
                # down during cache invalidation) must not turn it into a 500.
                logger.exception("After-commit hook %s failed", callback.__name__)
        self._callbacks.clear()


def get_after_commit() -> AfterCommit:
    return AfterCommit()


async def get_store(
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> AsyncGenerator[ProgressionStore, None]:
    """Request-scoped store.

    With DATABASE_URL: a PgProgressionStore over one session, committed
    when the endpoint returns and rolled back if it raises.  Without it:
    the process-wide in-memory store, whose units commit as they exit.
    Either way the after-commit hooks run only after the commit.
    """
    if async_session_factory is None:
        yield memory_store
    else:
        async with session_scope() as session:
            yield PgProgressionStore(session)
    await after_commit.run()
