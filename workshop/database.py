import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .constants import SCHEMA_VERSION_KEY, WORKSHOP_SCHEMA_VERSION
from .settings.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Substrings that identify a capacity failure, whichever layer raised it.
_QUOTA_MARKERS = ("quota", "storage", "disk is full", "database or disk is full")


def make_engine(url: Optional[str] = None, *, max_page_count: Optional[int] = None,
                echo: Optional[bool] = None) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    if max_page_count is None:
        max_page_count = settings.SQLITE_MAX_PAGE_COUNT
    eng = create_async_engine(url, echo=settings.DATABASE_ECHO if echo is None else echo, future=True)

    if make_url(url).get_backend_name() == "sqlite" and max_page_count:
        @event.listens_for(eng.sync_engine, "connect")
        def _cap_page_count(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute(f"PRAGMA max_page_count = {int(max_page_count)}")
            cursor.close()

    return eng


def make_session_maker(eng: AsyncEngine):
    return sessionmaker(eng, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = make_engine()


# ---------------------------
# SCHEMA REGISTRY
# ---------------------------
async def init_db(eng: Optional[AsyncEngine] = None) -> None:
    """Create missing tables and indices. Existing ones are left alone."""
    from . import models  # noqa: F401  registers every table on Base

    async with (eng or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)


async def ensure_schema_version(db: AsyncSession) -> int:
    """Stamp the running data-format version into ``meta`` if the store is behind."""
    from .models import MetaEntry

    current = (
        await db.execute(select(MetaEntry).where(MetaEntry.key == SCHEMA_VERSION_KEY))
    ).scalars().first()
    if current and current.value >= WORKSHOP_SCHEMA_VERSION:
        logger.debug("Schema version %s is current", current.value)
        return current.value

    async with atomic(db):
        if current:
            current.value = WORKSHOP_SCHEMA_VERSION
        else:
            db.add(MetaEntry(key=SCHEMA_VERSION_KEY, value=WORKSHOP_SCHEMA_VERSION))
    logger.info("Schema version stamped to %s", WORKSHOP_SCHEMA_VERSION)
    return WORKSHOP_SCHEMA_VERSION


async def wipe_database(db: AsyncSession) -> None:
    """Clear every data store. The schema marker in ``meta`` is kept."""
    from sqlalchemy import delete
    from .models import AssetRow, PersonaRow, ProjectRow, StepRow

    async with atomic(db):
        for row_type in (ProjectRow, StepRow, AssetRow, PersonaRow):
            await db.execute(delete(row_type))
    logger.info("Local store wiped")


# ---------------------------
# TRANSACTIONS
# ---------------------------
@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit everything done in the block, or nothing."""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


def is_quota_exceeded_error(error: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if type(current).__name__ == "QuotaExceededError":
            return True
        message = str(current).lower()
        if any(marker in message for marker in _QUOTA_MARKERS):
            return True
        current = getattr(current, "orig", None) or current.__cause__
    return False
