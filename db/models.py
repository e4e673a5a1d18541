from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class RuntimeStateEntry(Base):
    __tablename__ = "runtime_state_entries"

    category: Mapped[str] = mapped_column(Text, primary_key=True)
    entry_key: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class RuntimeStateMeta(Base):
    __tablename__ = "runtime_state_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_saved: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

