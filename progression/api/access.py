"""Ownership checks.

Plain functions rather than FastAPI dependencies because they need both
the Principal and the path's user id.  Call them at the top of an
endpoint body.
"""

from __future__ import annotations

from fastapi import HTTPException, status

from progression.models.principal import Principal


def check_owner_or_admin(principal: Principal, user_id: str) -> None:
    """Raise 403 unless the principal is ``user_id`` or a platform admin."""
    if principal.user_id == user_id:
        return
    if principal.is_platform_admin():
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You can only access your own progression data",
    )
