"""FastAPI dependency injection functions."""

import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db import database
from triggers.router import TriggerRouter

logger = logging.getLogger(__name__)


def get_session_factory() -> async_sessionmaker:
    """Session factory for components that open their own transactions."""
    return database.AsyncSessionLocal


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise


def get_trigger_router(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> TriggerRouter:
    return TriggerRouter(session_factory)


async def get_organization_id(
    x_organization_id: str = Header(default=None, alias="X-Organization-ID"),
) -> str:
    """
    Organization scope of the request.

    Authentication is handled in front of this service; the gateway
    forwards the caller's organization in the X-Organization-ID header.

    Raises:
        HTTPException: If the header is missing
    """
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Organization-ID header",
        )
    return x_organization_id
