from sqlalchemy import Column, DateTime
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.types import Uuid
from typing import AsyncGenerator
import uuid

from app.core.config import settings
from app.core.timezone_utils import utcnow


class _BaseModel:
    """Columns shared by every table"""

    @declared_attr
    def id(cls):
        return Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    @declared_attr
    def created_at(cls):
        return Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


Base = declarative_base(cls=_BaseModel)

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, future=True)

# Keep loaded attributes after commit so responses and notifications can
# read them without another round trip
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create tables (development only; production uses migrations)"""
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
