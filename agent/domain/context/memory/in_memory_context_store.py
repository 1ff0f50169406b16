from typing import Any, List, Optional
import structlog

from domain.models.context_item import ContextItem, clone_context_item
from ..context_store import ContextStore
from ..errors import DuplicateKeyError, MissingKeyError

logger = structlog.get_logger(__name__)


class InMemoryContextStore(ContextStore):
    """Volatile context store living for the lifetime of the process"""

    async def add(self, item: ContextItem) -> None:
        """Add a new live item"""

        self._validate_item(item)

        async with self._lock:
            if item.key in self._items:
                raise DuplicateKeyError(item.key)

            self._record(item)

        logger.debug("Added context item", key=item.key, source=item.source)

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
        """Replace the live value of an existing key"""

        async with self._lock:
            previous = self._items.get(key)
            if previous is None:
                raise MissingKeyError(key)

            updated = self._build_updated_item(
                previous, value, confidence, source, reasoning, parent_context_keys
            )
            self._record(updated)

        logger.debug("Updated context item", key=key)
        return updated

    async def delete(self, key: str) -> None:
        """Remove a live item; history is kept"""

        async with self._lock:
            if self._items.pop(key, None) is not None:
                logger.debug("Deleted context item", key=key)

    async def create_snapshot(self, snapshot_id: str) -> str:
        """Snapshot the live map under the given id"""

        async with self._lock:
            self._snapshots[snapshot_id] = self._copy_live_map()

        logger.debug("Created snapshot", snapshot_id=snapshot_id)
        return snapshot_id

    async def restore_snapshot(self, snapshot_id: str) -> bool:
        """Replace the live map with a snapshot; False if it does not exist"""

        async with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            if snapshot is None:
                return False

            self._items = {key: clone_context_item(item) for key, item in snapshot.items()}

        logger.info("Restored snapshot", snapshot_id=snapshot_id, live_keys=len(snapshot))
        return True
