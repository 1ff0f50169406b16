from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set
import asyncio
import math

from domain.models.context_item import ContextItem, clone_context_item, utc_now
from .errors import InvalidContextItemError


class ReadableContext:
    """Read side shared by stores, frozen copies and agent views.

    Subclasses own ``_items`` (live key -> item) and ``_history``
    (key -> items in mutation order).
    """

    _items: Dict[str, ContextItem]
    _history: Dict[str, List[ContextItem]]

    def _ensure_ready(self) -> None:
        """Hook for stores that must finish loading before serving reads"""

    def get(self, key: str) -> Optional[ContextItem]:
        self._ensure_ready()
        return self._items.get(key)

    def has(self, key: str) -> bool:
        self._ensure_ready()
        return key in self._items

    def get_all_keys(self) -> Set[str]:
        self._ensure_ready()
        return set(self._items.keys())

    def get_by_source(self, source: str) -> List[ContextItem]:
        self._ensure_ready()
        return [item for item in self._items.values() if item.source == source]

    def get_by_confidence(self, min_confidence: float) -> List[ContextItem]:
        self._ensure_ready()
        return [item for item in self._items.values() if item.confidence >= min_confidence]

    def get_history(self, key: str) -> List[ContextItem]:
        self._ensure_ready()
        return list(self._history.get(key, []))

    def items(self) -> List[ContextItem]:
        """All live items, in insertion order"""
        self._ensure_ready()
        return list(self._items.values())


class FrozenContext(ReadableContext):
    """Detached point-in-time copy of a store's live map and history"""

    def __init__(self, source: ReadableContext):
        source._ensure_ready()
        self._items = dict(source._items)
        self._history = {key: list(entries) for key, entries in source._history.items()}


class ContextView:
    """Read-only facade handed to agents; exposes no mutation methods"""

    __slots__ = ("_context",)

    def __init__(self, context: ReadableContext):
        self._context = context

    @classmethod
    def frozen(cls, context: ReadableContext) -> "ContextView":
        return cls(FrozenContext(context))

    def get(self, key: str) -> Optional[ContextItem]:
        return self._context.get(key)

    def has(self, key: str) -> bool:
        return self._context.has(key)

    def get_all_keys(self) -> Set[str]:
        return self._context.get_all_keys()

    def get_by_source(self, source: str) -> List[ContextItem]:
        return self._context.get_by_source(source)

    def get_by_confidence(self, min_confidence: float) -> List[ContextItem]:
        return self._context.get_by_confidence(min_confidence)

    def get_history(self, key: str) -> List[ContextItem]:
        return self._context.get_history(key)

    def value(self, key: str, default: Any = None) -> Any:
        """Shortcut for ``get(key).value`` with a default for absent keys"""
        item = self._context.get(key)
        return item.value if item is not None else default


def has_required_context(context: Any, required_keys: Iterable[str]) -> bool:
    """True when every required key is live in the given store or view"""
    return all(context.has(key) for key in required_keys)


class ContextStore(ReadableContext, ABC):
    """Shared mutable context pool: live items, per-key history and snapshots"""

    def __init__(self):
        self._items: Dict[str, ContextItem] = {}
        self._history: Dict[str, List[ContextItem]] = {}
        self._snapshots: Dict[str, Dict[str, ContextItem]] = {}
        self._lock = asyncio.Lock()

    @abstractmethod
    async def add(self, item: ContextItem) -> None:
        """Insert a new live item; fails if the key is already live"""

    @abstractmethod
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
        """Replace a live item's value; fails if the key is not live"""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a live item, keeping its history"""

    @abstractmethod
    async def create_snapshot(self, snapshot_id: str) -> str:
        """Copy the live map under ``snapshot_id``"""

    @abstractmethod
    async def restore_snapshot(self, snapshot_id: str) -> bool:
        """Replace the live map with a stored snapshot"""

    async def merge(self, items: Iterable[ContextItem]) -> None:
        """Add or update each item in order; later items see earlier effects"""

        for item in items:
            if self.has(item.key):
                await self.update(item.key, item.value, item.confidence)
            else:
                await self.add(item)

    def get_snapshot_ids(self) -> List[str]:
        self._ensure_ready()
        return list(self._snapshots.keys())

    def has_snapshot(self, snapshot_id: str) -> bool:
        self._ensure_ready()
        return snapshot_id in self._snapshots

    def view(self) -> ContextView:
        return ContextView(self)

    async def close(self) -> None:
        """Release backing resources, if any"""

    # Transition helpers shared by implementations

    @staticmethod
    def _validate_item(item: ContextItem) -> None:
        if not isinstance(item, ContextItem):
            raise InvalidContextItemError(f"Expected ContextItem, got {type(item).__name__}")
        if not item.key:
            raise InvalidContextItemError("Context item key is required")
        if not item.source:
            raise InvalidContextItemError("Context item source is required", key=item.key)
        _check_confidence(item.confidence, item.key)
        _check_json_value(item.value, item.key)

    def _build_updated_item(
        self,
        previous: ContextItem,
        value: Any,
        confidence: Optional[float],
        source: Optional[str],
        reasoning: Optional[str],
        parent_context_keys: Optional[List[str]],
    ) -> ContextItem:
        if confidence is not None:
            _check_confidence(confidence, previous.key)
        _check_json_value(value, previous.key)

        return ContextItem(
            key=previous.key,
            value=value,
            confidence=confidence if confidence is not None else previous.confidence,
            source=source if source is not None else previous.source,
            timestamp=utc_now(),
            reasoning=reasoning if reasoning is not None else previous.reasoning,
            parent_context_keys=(
                parent_context_keys if parent_context_keys is not None
                else previous.parent_context_keys
            ),
        )

    def _record(self, item: ContextItem) -> None:
        """Make ``item`` live and append it to its key's history"""
        self._items[item.key] = item
        self._history.setdefault(item.key, []).append(item)

    def _copy_live_map(self) -> Dict[str, ContextItem]:
        return {key: clone_context_item(item) for key, item in self._items.items()}


def _check_confidence(confidence: Any, key: Optional[str]) -> None:
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise InvalidContextItemError(f"Confidence must be a number, got {confidence!r}", key=key)
    if not 0.0 <= confidence <= 1.0:
        raise InvalidContextItemError(f"Confidence must be within [0, 1], got {confidence}", key=key)


def _check_json_value(value: Any, key: Optional[str]) -> None:
    """Values must survive a JSON round trip unchanged"""

    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidContextItemError(f"Value must be a finite number, got {value}", key=key)
        return
    if isinstance(value, list):
        for entry in value:
            _check_json_value(entry, key)
        return
    if isinstance(value, dict):
        for name, entry in value.items():
            if not isinstance(name, str):
                raise InvalidContextItemError(f"Object keys must be strings, got {name!r}", key=key)
            _check_json_value(entry, key)
        return
    raise InvalidContextItemError(
        f"Value of type {type(value).__name__} is not JSON-serializable", key=key
    )
