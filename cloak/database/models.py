"""
SQLAlchemy models for the note store.

`sk_spend` and `r` hold either plain lowercase hex or an "enc1:" token
when a field key is configured (see cloak.crypto_core.field_encryption).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class U64(TypeDecorator):
    """u64 stored as decimal text; SQL integers are signed 64-bit."""

    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(int(value))

    def process_result_value(self, value, dialect):
        return None if value is None else int(value)


class Base(DeclarativeBase):
    pass


class NoteRecord(Base):
    __tablename__ = "cloak_notes"

    commitment: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[str] = mapped_column(String(8), default="2.0")
    amount: Mapped[int] = mapped_column(U64, nullable=False)
    sk_spend: Mapped[str] = mapped_column(Text, nullable=False)
    r: Mapped[str] = mapped_column(Text, nullable=False)

    deposit_signature: Mapped[Optional[str]] = mapped_column(String(128))
    deposit_slot: Mapped[Optional[int]] = mapped_column(BigInteger)
    leaf_index: Mapped[Optional[int]] = mapped_column(Integer)
    root: Mapped[Optional[str]] = mapped_column(String(64))
    merkle_proof: Mapped[Optional[Dict[str, List[Any]]]] = mapped_column(JSON)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    network: Mapped[str] = mapped_column(String(16), nullable=False, default="localnet")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="generated")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (Index("ix_cloak_notes_status", "status"),)

    def __repr__(self) -> str:
        return f"<NoteRecord {self.commitment[:16]}... {self.status} leaf={self.leaf_index}>"
