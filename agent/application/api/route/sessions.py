from typing import Annotated, Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from application.api.schema.requests import (
    CreateSessionRequest,
    ProcessRequest,
    ProcessResponse,
    SessionResponse,
    SnapshotRequest,
    SnapshotResponse,
)
from application.session.session_manager import Session, SessionManager
from domain.orchestration.agents.agent_registry import AgentRegistry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


Manager = Annotated[SessionManager, Depends(get_session_manager)]


def _require_session(manager: SessionManager, session_id: str) -> Session:
    session = manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("/sessions", response_model=SessionResponse)
async def create_session(manager: Manager, request: Optional[CreateSessionRequest] = None):
    session = await manager.create_session(request.session_id if request else None)
    return SessionResponse(**session.get_info())


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(manager: Manager):
    return [SessionResponse(**info) for info in manager.list_sessions()]


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, manager: Manager):
    session = _require_session(manager, session_id)
    return SessionResponse(**session.get_info())


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, manager: Manager):
    if not await manager.close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session_id": session_id, "closed": True}


@router.post("/sessions/{session_id}/process", response_model=ProcessResponse)
async def process_context(session_id: str, body: ProcessRequest, manager: Manager):
    """Seed the session's store and run its agents to fixpoint"""

    session = _require_session(manager, session_id)
    with structlog.contextvars.bound_contextvars(session_id=session_id):
        store = await session.orchestrator.process([item.to_item() for item in body.items])
    session.touch()

    report = session.orchestrator.last_report
    return ProcessResponse(
        session_id=session_id,
        outcome=report.outcome.value,
        iterations=report.iteration_count,
        report=report.get_summary(),
        items={item.key: item.to_document() for item in store.items()},
    )


@router.get("/sessions/{session_id}/items")
async def list_items(session_id: str, manager: Manager, min_confidence: Optional[float] = None,
                     source: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    store = _require_session(manager, session_id).store

    if source is not None:
        items = store.get_by_source(source)
    elif min_confidence is not None:
        items = store.get_by_confidence(min_confidence)
    else:
        items = store.items()

    if source is not None and min_confidence is not None:
        items = [item for item in items if item.confidence >= min_confidence]

    return {item.key: item.to_document() for item in items}


@router.get("/sessions/{session_id}/items/{key}")
async def get_item(session_id: str, key: str, manager: Manager) -> Dict[str, Any]:
    item = _require_session(manager, session_id).store.get(key)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Context key {key} not found")
    return item.to_document()


@router.get("/sessions/{session_id}/items/{key}/history")
async def get_item_history(session_id: str, key: str, manager: Manager) -> List[Dict[str, Any]]:
    history = _require_session(manager, session_id).store.get_history(key)
    if not history:
        raise HTTPException(status_code=404, detail=f"No history for context key {key}")
    return [item.to_document() for item in history]


@router.post("/sessions/{session_id}/snapshots", response_model=SnapshotResponse)
async def create_snapshot(session_id: str, body: SnapshotRequest, manager: Manager):
    store = _require_session(manager, session_id).store
    snapshot_id = await store.create_snapshot(body.snapshot_id)
    return SnapshotResponse(
        session_id=session_id,
        snapshot_id=snapshot_id,
        context_keys=sorted(store.get_all_keys()),
    )


@router.post("/sessions/{session_id}/snapshots/{snapshot_id}/restore", response_model=SnapshotResponse)
async def restore_snapshot(session_id: str, snapshot_id: str, manager: Manager):
    store = _require_session(manager, session_id).store
    if not await store.restore_snapshot(snapshot_id):
        raise HTTPException(status_code=404, detail=f"Snapshot {snapshot_id} not found")

    logger.info("Snapshot restored via API", session_id=session_id, snapshot_id=snapshot_id)
    return SnapshotResponse(
        session_id=session_id,
        snapshot_id=snapshot_id,
        restored=True,
        context_keys=sorted(store.get_all_keys()),
    )


@router.get("/agents")
async def list_agents(manager: Manager) -> List[Dict[str, Any]]:
    """Agents registered for new sessions"""
    return AgentRegistry(manager.agent_factory()).describe()
