from clixen.db.models import Base, UserProfile, LinkingToken, AuditRecord, UNLIMITED_QUOTA
from clixen.db.database import (
    get_db, init_db, async_session_maker, engine, build_engine, build_session_maker
)

__all__ = [
    "Base",
    "UserProfile",
    "LinkingToken",
    "AuditRecord",
    "UNLIMITED_QUOTA",
    # Database
    "get_db",
    "init_db",
    "async_session_maker",
    "engine",
    "build_engine",
    "build_session_maker",
]
