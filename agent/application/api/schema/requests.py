from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field

from domain.models.context_item import ContextItem, utc_now


class ContextItemIn(BaseModel):
    """Context item supplied by an API caller"""
    key: str = Field(min_length=1)
    value: Any = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    source: str = Field("user", min_length=1)
    reasoning: Optional[str] = None
    parent_context_keys: Optional[List[str]] = None

    def to_item(self) -> ContextItem:
        return ContextItem(
            key=self.key,
            value=self.value,
            confidence=self.confidence,
            source=self.source,
            timestamp=utc_now(),
            reasoning=self.reasoning,
            parent_context_keys=self.parent_context_keys,
        )


class CreateSessionRequest(BaseModel):
    session_id: Optional[str] = Field(None, min_length=1, max_length=128)


class ProcessRequest(BaseModel):
    """Initial batch of context items for one processing run"""
    items: List[ContextItemIn] = Field(default_factory=list)


class SnapshotRequest(BaseModel):
    snapshot_id: str = Field(min_length=1, max_length=256)


class SessionResponse(BaseModel):
    session_id: str
    store_backend: str
    context_keys: List[str] = Field(default_factory=list)
    snapshot_ids: List[str] = Field(default_factory=list)
    agents: List[str] = Field(default_factory=list)
    created_at: str
    last_activity: str


class ProcessResponse(BaseModel):
    session_id: str
    outcome: str
    iterations: int
    report: Dict[str, Any] = Field(default_factory=dict)
    items: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class SnapshotResponse(BaseModel):
    session_id: str
    snapshot_id: str
    restored: Optional[bool] = None
    context_keys: List[str] = Field(default_factory=list)
