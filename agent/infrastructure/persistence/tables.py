from sqlalchemy import Column, String, Integer, Float, JSON, Text, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ContextItemRow(Base):
    """Live context item, one row per (session, key)"""
    __tablename__ = "context_items"
    __table_args__ = (
        UniqueConstraint("session_id", "key", name="uq_context_items_session_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False, index=True)
    key = Column(String(512), nullable=False)
    value = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=False)
    source = Column(String(256), nullable=False)
    timestamp = Column(String(64), nullable=False)  # ISO-8601
    reasoning = Column(Text, nullable=True)
    parent_context_keys = Column(JSON, nullable=True)


class HistoryItemRow(Base):
    """Append-only mutation log; ``seq`` gives program order"""
    __tablename__ = "context_history"
    __table_args__ = (
        Index("ix_context_history_session_key", "session_id", "key"),
        {"sqlite_autoincrement": True},
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False)
    key = Column(String(512), nullable=False)
    value = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=False)
    source = Column(String(256), nullable=False)
    timestamp = Column(String(64), nullable=False)
    reasoning = Column(Text, nullable=True)
    parent_context_keys = Column(JSON, nullable=True)


class SnapshotRow(Base):
    """Named copy of a session's live map stored as one embedded document"""
    __tablename__ = "context_snapshots"
    __table_args__ = (
        UniqueConstraint("session_id", "snapshot_id", name="uq_context_snapshots_session_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False, index=True)
    snapshot_id = Column(String(256), nullable=False)
    items = Column(JSON, nullable=False, default=dict)  # key -> item document
    created_at = Column(String(64), nullable=False)


ITEM_COLUMNS = (
    "key",
    "value",
    "confidence",
    "source",
    "timestamp",
    "reasoning",
    "parent_context_keys",
)


def row_to_document(row) -> dict:
    """Project a live or history row onto a context item document"""
    return {column: getattr(row, column) for column in ITEM_COLUMNS}
