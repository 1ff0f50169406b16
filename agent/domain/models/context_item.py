from typing import Any, Dict, List, Optional, Literal, Union, Annotated, Iterable
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
import re


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContextItem(BaseModel):
    """A single provenance-tagged fact in the shared context pool.

    Items are frozen: every store transition builds a new item, so references
    handed out earlier stay valid views of a past state.
    """
    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1, description="Identifier, unique among live items of a store")
    value: Any = Field(description="Arbitrary JSON-serializable payload")
    confidence: float = Field(ge=0.0, le=1.0, description="Reliability estimate in [0, 1]")
    source: str = Field(min_length=1, description="Producing agent id, or 'user' / 'system'")
    timestamp: datetime = Field(default_factory=utc_now, description="Creation or last update time")
    reasoning: Optional[str] = Field(None, description="Human-readable justification")
    parent_context_keys: Optional[List[str]] = Field(
        None, description="Keys consulted to derive this item, in order"
    )

    @field_validator("parent_context_keys")
    @classmethod
    def _dedupe_parents(cls, keys: Optional[List[str]]) -> Optional[List[str]]:
        if keys is None:
            return None
        # Ordered set semantics
        return list(dict.fromkeys(keys))

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready representation used for persistence and the API"""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ContextItem":
        return cls.model_validate(document)


class AddOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["add"] = "add"
    item: ContextItem


class UpdateOperation(BaseModel):
    """Replace the value of a live key.

    ``source``, ``reasoning`` and ``parent_context_keys`` are carried forward
    from the previous live item unless given here.
    """
    model_config = ConfigDict(frozen=True)

    type: Literal["update"] = "update"
    key: str
    value: Any
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    source: Optional[str] = None
    reasoning: Optional[str] = None
    parent_context_keys: Optional[List[str]] = None


class DeleteOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["delete"] = "delete"
    key: str


class MergeOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["merge"] = "merge"
    items: List[ContextItem] = Field(default_factory=list)


class SnapshotOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["snapshot"] = "snapshot"
    snapshot_id: str = Field(min_length=1)


ContextOperation = Annotated[
    Union[AddOperation, UpdateOperation, DeleteOperation, MergeOperation, SnapshotOperation],
    Field(discriminator="type"),
]


def format_context_key(key: str) -> str:
    """Lowercase a key and replace whitespace runs with underscores"""
    return re.sub(r"\s+", "_", key.lower())


def create_context_item(
    key: str,
    value: Any,
    source: str,
    confidence: float = 1.0,
    reasoning: Optional[str] = None,
    parent_context_keys: Optional[List[str]] = None,
) -> ContextItem:
    """Create a new context item with a normalized key and a fresh timestamp"""

    return ContextItem(
        key=format_context_key(key),
        value=value,
        confidence=confidence,
        source=source,
        timestamp=utc_now(),
        reasoning=reasoning,
        parent_context_keys=parent_context_keys,
    )


def clone_context_item(item: ContextItem) -> ContextItem:
    """Deep copy an item, including its value"""
    return item.model_copy(deep=True)


def calculate_combined_confidence(confidences: Iterable[float]) -> float:
    """Mean confidence of several items; 0.0 when there are none"""

    values = list(confidences)
    if not values:
        return 0.0
    return sum(values) / len(values)
