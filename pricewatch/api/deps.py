"""FastAPI dependencies."""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import User
from pricewatch.db.session import get_db


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def get_current_user_id(
    x_user_id: str = Header(..., alias="X-User-Id"),
    db: AsyncSession = Depends(get_database),
) -> int:
    """
    Caller identity set by the authenticating proxy in front of this service.

    Raises:
        HTTPException: 401 if the header is not a positive integer or names
            no known user
    """
    try:
        user_id = int(x_user_id)
    except ValueError:
        user_id = 0
    if user_id <= 0 or await db.get(User, user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header",
        )
    return user_id
