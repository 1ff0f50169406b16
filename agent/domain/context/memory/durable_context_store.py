from typing import Any, Dict, List, Optional
from collections import defaultdict
from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
import structlog

from domain.models.context_item import ContextItem, clone_context_item, utc_now
from infrastructure.persistence.database import (
    create_engine_for_url,
    create_session_factory,
    init_database,
)
from infrastructure.persistence.tables import (
    ContextItemRow,
    HistoryItemRow,
    SnapshotRow,
    row_to_document,
)
from ..context_store import ContextStore
from ..errors import (
    DuplicateKeyError,
    MissingKeyError,
    PersistenceError,
    StoreConnectionError,
    StoreNotReadyError,
)

logger = structlog.get_logger(__name__)


class DurableContextStore(ContextStore):
    """Context store with write-through persistence, scoped to one session.

    All live items, histories and snapshots of the session are loaded into
    memory by ``connect()``; reads are then served from memory. Every
    mutation is persisted in its own transaction before the in-memory state
    changes, so a failed write leaves the store as it was.

    Restoring a snapshot is all-or-nothing: the live rows are deleted and
    re-inserted in a single transaction, and the in-memory map is swapped
    only once that transaction has committed.
    """

    def __init__(
        self,
        session_id: str,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        history_load_limit: Optional[int] = None,
        echo: bool = False,
    ):
        super().__init__()
        if engine is None and database_url is None:
            raise ValueError("Either database_url or engine is required")
        if history_load_limit is not None and history_load_limit < 1:
            raise ValueError("history_load_limit must be at least 1")

        self.session_id = session_id
        self.database_url = database_url
        self.history_load_limit = history_load_limit
        self._echo = echo
        self._engine = engine
        self._owns_engine = engine is None
        self._session_factory = None
        self._loaded = False

    @property
    def connected(self) -> bool:
        return self._loaded

    async def connect(self) -> "DurableContextStore":
        """Open the backing database and load this session's state"""

        try:
            if self._engine is None:
                self._engine = create_engine_for_url(self.database_url, echo=self._echo)
            self._session_factory = create_session_factory(self._engine)
            await init_database(self._engine)
            await self._load()
        except SQLAlchemyError as e:
            logger.error("Failed to connect context store", session_id=self.session_id, error=str(e))
            await self.close()
            raise StoreConnectionError(f"Database connection failed: {e}") from e
        except (OSError, ValueError) as e:
            logger.error("Failed to load context store", session_id=self.session_id, error=str(e))
            await self.close()
            raise StoreConnectionError(f"Failed to load context from database: {e}") from e

        logger.info("Connected context store", session_id=self.session_id)
        return self

    async def close(self) -> None:
        self._loaded = False
        if self._owns_engine and self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    def _ensure_ready(self) -> None:
        if not self._loaded:
            raise StoreNotReadyError(
                f"Context store for session {self.session_id} is not loaded; call connect() first"
            )

    async def _load(self) -> None:
        """Replay live items, history and snapshots for this session"""

        async with self._session_factory() as session:
            live_rows = (await session.execute(
                select(ContextItemRow)
                .where(ContextItemRow.session_id == self.session_id)
                .order_by(ContextItemRow.id)
            )).scalars().all()

            history_rows = (await session.execute(
                select(HistoryItemRow)
                .where(HistoryItemRow.session_id == self.session_id)
                .order_by(HistoryItemRow.seq)
            )).scalars().all()

            snapshot_rows = (await session.execute(
                select(SnapshotRow).where(SnapshotRow.session_id == self.session_id)
            )).scalars().all()

        items: Dict[str, ContextItem] = {}
        for row in live_rows:
            items[row.key] = ContextItem.from_document(row_to_document(row))

        history: Dict[str, List[ContextItem]] = defaultdict(list)
        for row in history_rows:
            history[row.key].append(ContextItem.from_document(row_to_document(row)))

        if self.history_load_limit is not None:
            for key in history:
                history[key] = history[key][-self.history_load_limit:]

        for key, item in items.items():
            if not history.get(key):
                logger.warning("Live item without history; seeding from live row",
                               session_id=self.session_id, key=key)
                history[key] = [item]

        snapshots = {
            row.snapshot_id: {
                key: ContextItem.from_document(document)
                for key, document in (row.items or {}).items()
            }
            for row in snapshot_rows
        }

        self._items = items
        self._history = dict(history)
        self._snapshots = snapshots
        self._loaded = True

        logger.info(
            "Loaded context",
            session_id=self.session_id,
            items=len(self._items),
            history_keys=len(self._history),
            snapshots=len(self._snapshots),
        )

    async def add(self, item: ContextItem) -> None:
        """Add a new live item and persist it"""

        self._validate_item(item)

        async with self._lock:
            self._ensure_ready()
            if item.key in self._items:
                raise DuplicateKeyError(item.key)

            document = item.to_document()
            try:
                async with self._session_factory() as session, session.begin():
                    session.add(ContextItemRow(session_id=self.session_id, **document))
                    session.add(HistoryItemRow(session_id=self.session_id, **document))
            except SQLAlchemyError as e:
                logger.error("Failed to add context item", key=item.key, error=str(e))
                raise PersistenceError(f"Failed to add context item {item.key}", key=item.key) from e

            self._record(item)

        logger.debug("Added context item", key=item.key, session_id=self.session_id)

    async def update(
        self,
        key: str,
        value: Any,
        confidence: Optional[float] = None,
        *,
        source: Optional[str] = None,
        reasoning: Optional[str] = None,
        parent_context_keys: Optional[List[str]] = None,
    ) -> ContextItem:
        """Replace the live value of an existing key and persist it"""

        async with self._lock:
            self._ensure_ready()
            previous = self._items.get(key)
            if previous is None:
                raise MissingKeyError(key)

            updated = self._build_updated_item(
                previous, value, confidence, source, reasoning, parent_context_keys
            )
            document = updated.to_document()
            try:
                async with self._session_factory() as session, session.begin():
                    await session.execute(
                        update(ContextItemRow)
                        .where(
                            ContextItemRow.session_id == self.session_id,
                            ContextItemRow.key == key,
                        )
                        .values(**{k: v for k, v in document.items() if k != "key"})
                    )
                    session.add(HistoryItemRow(session_id=self.session_id, **document))
            except SQLAlchemyError as e:
                logger.error("Failed to update context item", key=key, error=str(e))
                raise PersistenceError(f"Failed to update context item {key}", key=key) from e

            self._record(updated)

        logger.debug("Updated context item", key=key, session_id=self.session_id)
        return updated

    async def delete(self, key: str) -> None:
        """Remove a live item from memory and the live table; history is kept"""

        async with self._lock:
            self._ensure_ready()
            if key not in self._items:
                return

            try:
                async with self._session_factory() as session, session.begin():
                    await session.execute(
                        delete(ContextItemRow).where(
                            ContextItemRow.session_id == self.session_id,
                            ContextItemRow.key == key,
                        )
                    )
            except SQLAlchemyError as e:
                logger.error("Failed to delete context item", key=key, error=str(e))
                raise PersistenceError(f"Failed to delete context item {key}", key=key) from e

            del self._items[key]

        logger.debug("Deleted context item", key=key, session_id=self.session_id)

    async def create_snapshot(self, snapshot_id: str) -> str:
        """Snapshot the live map and upsert it into the snapshot table"""

        async with self._lock:
            self._ensure_ready()
            snapshot = self._copy_live_map()
            documents = {key: item.to_document() for key, item in snapshot.items()}

            try:
                async with self._session_factory() as session, session.begin():
                    await session.execute(
                        delete(SnapshotRow).where(
                            SnapshotRow.session_id == self.session_id,
                            SnapshotRow.snapshot_id == snapshot_id,
                        )
                    )
                    session.add(SnapshotRow(
                        session_id=self.session_id,
                        snapshot_id=snapshot_id,
                        items=documents,
                        created_at=utc_now().isoformat(),
                    ))
            except SQLAlchemyError as e:
                logger.error("Failed to create snapshot", snapshot_id=snapshot_id, error=str(e))
                raise PersistenceError(f"Failed to create snapshot {snapshot_id}") from e

            self._snapshots[snapshot_id] = snapshot

        logger.debug("Created snapshot", snapshot_id=snapshot_id, session_id=self.session_id)
        return snapshot_id

    async def restore_snapshot(self, snapshot_id: str) -> bool:
        """Replace live items, in memory and in the database, with a snapshot"""

        async with self._lock:
            self._ensure_ready()
            snapshot = self._snapshots.get(snapshot_id)

            try:
                if snapshot is None:
                    snapshot = await self._fetch_snapshot(snapshot_id)
                    if snapshot is None:
                        return False
                    self._snapshots[snapshot_id] = snapshot

                async with self._session_factory() as session, session.begin():
                    await session.execute(
                        delete(ContextItemRow).where(ContextItemRow.session_id == self.session_id)
                    )
                    session.add_all([
                        ContextItemRow(session_id=self.session_id, **item.to_document())
                        for item in snapshot.values()
                    ])
            except SQLAlchemyError as e:
                logger.error("Failed to restore snapshot", snapshot_id=snapshot_id, error=str(e))
                raise PersistenceError(f"Failed to restore snapshot {snapshot_id}") from e

            self._items = {key: clone_context_item(item) for key, item in snapshot.items()}

        logger.info("Restored snapshot", snapshot_id=snapshot_id, session_id=self.session_id,
                    live_keys=len(snapshot))
        return True

    async def _fetch_snapshot(self, snapshot_id: str) -> Optional[Dict[str, ContextItem]]:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(SnapshotRow).where(
                    SnapshotRow.session_id == self.session_id,
                    SnapshotRow.snapshot_id == snapshot_id,
                )
            )).scalar_one_or_none()

        if row is None:
            return None
        return {key: ContextItem.from_document(document) for key, document in row.items.items()}
