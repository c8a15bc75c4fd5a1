"""
FastAPI dependency injection functions.

Provides reusable dependencies for caller identity and database sessions.
"""

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import AuthenticationError
from medreports.db.session import get_db
from medreports.schemas.common import Identity


async def get_identity(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Identity:
    """
    Get the caller identity set by the upstream auth layer.

    Args:
        x_user_id: Authenticated user ID
        x_user_role: Role of that user, AGENT when absent

    Returns:
        Caller identity

    Raises:
        AuthenticationError: If no user ID was supplied
    """
    if not x_user_id:
        raise AuthenticationError()
    return Identity(user_id=x_user_id, role=(x_user_role or "AGENT").upper())


# Type aliases for cleaner dependency injection
CurrentIdentity = Annotated[Identity, Depends(get_identity)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
