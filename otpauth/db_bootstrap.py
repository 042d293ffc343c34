from __future__ import annotations

import logging
import re

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

logger = logging.getLogger(__name__)

_DB_NAME_RE = re.compile(r"[A-Za-z0-9_]+")
_SCHEMA_EXISTS = text("SELECT 1 FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = :name")


def ensure_database_exists(database_url: str) -> bool:
    """Create the MySQL schema named in ``database_url`` if it is missing.

    SQLite and other backends create their storage on first connect and are
    skipped. Returns True only when the schema was actually created.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "mysql" or not url.database:
        return False

    name = url.database
    if not _DB_NAME_RE.fullmatch(name):
        raise ValueError(f"unsupported database name: {name!r}")

    engine = create_engine(url.set(database=None), isolation_level="AUTOCOMMIT")
    try:
        with engine.connect() as conn:
            if conn.execute(_SCHEMA_EXISTS, {"name": name}).first() is not None:
                return False
            conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"))
    finally:
        engine.dispose()

    logger.info("Created database %s", name)
    return True
