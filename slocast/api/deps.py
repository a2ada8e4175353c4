"""
FastAPI dependencies for the API routes.

Handlers receive the session factory rather than a session: each stage
opens its own per-tenant units of work. Tests override get_sessions.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db.engine import get_session_factory


async def get_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


__all__ = ["get_sessions"]
