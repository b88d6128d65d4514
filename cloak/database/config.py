"""
Database engine/session setup for the SQL note store.

Usage:
    from cloak.database.config import SessionLocal, init_database

    init_database()
    with SessionLocal() as session:
        ...
"""
from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from cloak import config
from cloak.api.logging_config import get_logger
from cloak.crypto_core.field_encryption import FieldEncryption, key_fingerprint
from cloak.database.models import Base

logger = get_logger("database")


def make_engine(url: str = config.DATABASE_URL) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def _ensure_sqlite_dir(url: str) -> None:
    prefix = "sqlite:///"
    if url.startswith(prefix) and url != prefix + ":memory:":
        parent = os.path.dirname(url[len(prefix):])
        if parent:
            os.makedirs(parent, exist_ok=True)


def init_database(bind: Optional[Engine] = None) -> None:
    """Create tables if missing. Safe to call repeatedly."""
    target = bind or engine
    _ensure_sqlite_dir(str(target.url))
    Base.metadata.create_all(target)
    logger.info(f"database ready at {target.url.render_as_string(hide_password=True)}")


def test_connection(bind: Optional[Engine] = None) -> None:
    with (bind or engine).connect() as conn:
        conn.execute(text("SELECT 1"))


def get_encryptor(key_hex: Optional[str] = None) -> Optional[FieldEncryption]:
    """
    Field encryptor from CLOAK_FIELD_KEY (64 hex chars), or None when no key
    is configured and secrets are stored as plain hex.
    """
    key_hex = config.CLOAK_FIELD_KEY if key_hex is None else key_hex
    if not key_hex:
        return None
    try:
        master = bytes.fromhex(key_hex)
        enc = FieldEncryption(master)
    except ValueError as e:
        raise ValueError(f"CLOAK_FIELD_KEY must be 64 hex characters: {e}") from e
    logger.info(f"at-rest encryption enabled (key {key_fingerprint(master)})")
    return enc
