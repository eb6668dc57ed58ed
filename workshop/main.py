import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .database import engine, ensure_schema_version, init_db, make_session_maker
from .settings.config import settings

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# ----------------------
# Store startup
# ----------------------
async def open_store(eng: Optional[AsyncEngine] = None) -> int:
    """Bring the local store up to date and return its schema version.

    Safe to call on every launch: missing tables/indices are created, existing
    data is left alone, and the version marker is only ever raised.
    """
    from . import models  # noqa: F401  Required for SQLAlchemy model detection

    eng = eng or engine
    await init_db(eng)
    async with make_session_maker(eng)() as db:
        version = await ensure_schema_version(db)
    logger.info("Workshop store ready at %s (schema v%s)", eng.url.render_as_string(hide_password=True), version)
    return version
