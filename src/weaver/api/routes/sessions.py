from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from starlette.convertors import Convertor, register_url_convertor

from weaver.application.factory import OrchestratorFactory
from weaver.application.registry import SessionRegistry
from weaver.core.domain.errors import ExecutionError, InvalidTransitionError, OrchestrationError
from weaver.core.domain.models import Decision, Resource
from weaver.core.domain.session import OrchestrationSession


class ResourceIdConvertor(Convertor):
    """Resource ids may contain slashes but never end in the `/confirm` action."""

    regex = r".+(?<!/confirm)"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


register_url_convertor("resource_id", ResourceIdConvertor())

router = APIRouter()


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_factory(request: Request) -> OrchestratorFactory:
    return request.app.state.factory


class ResourceIn(BaseModel):
    """A discovered resource submitted to a new session."""
    id: Optional[str] = None
    kind: str = "repository"
    locator: str
    discovery_context: Dict[str, Any] = Field(default_factory=dict)


class CreateSessionRequest(BaseModel):
    """Request to open a session and analyze its resources."""
    profile: str = "dev"
    project_id: str = "default"
    user_intent: str = ""
    project_context: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceIn] = Field(default_factory=list)
    analyze: bool = True


class SessionSummary(BaseModel):
    """Overview of a live session."""
    session_id: str
    project_id: str
    resources: int
    by_state: Dict[str, int]


class ConfirmRequest(BaseModel):
    """Human confirmation of an analyzed plan."""
    decision: Decision
    execute: bool = False


class ConfirmResponse(BaseModel):
    """Resource state after confirmation (and execution, if requested)."""
    resource: Dict[str, Any]
    execution: Optional[Dict[str, Any]] = None


def _summary(session: OrchestrationSession) -> SessionSummary:
    by_state: Dict[str, int] = {}
    states = session.states()
    for snapshot in states:
        by_state[snapshot.state.value] = by_state.get(snapshot.state.value, 0) + 1
    return SessionSummary(
        session_id=session.session_id,
        project_id=session.executor.project_id,
        resources=len(states),
        by_state=by_state,
    )


def _session_or_404(registry: SessionRegistry, session_id: str) -> OrchestrationSession:
    try:
        return registry.get(session_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'\""))


@router.post("/sessions", response_model=SessionSummary, status_code=201)
async def create_session(
    request: CreateSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
    factory: OrchestratorFactory = Depends(get_factory),
):
    """Open a session, discover the given resources and (by default) analyze them."""
    try:
        resources = [Resource.from_dict(item.model_dump()) for item in request.resources]
        session = factory.create_session(
            profile=request.profile,
            project_id=request.project_id,
            user_intent=request.user_intent,
            project_context=request.project_context,
            locks=registry.locks,
        )
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await session.open()
    registry.add(session)
    await session.discover(resources)
    if request.analyze:
        await session.analyze_pending()
    return _summary(session)


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(registry: SessionRegistry = Depends(get_registry)):
    """List live sessions."""
    return [_summary(session) for session in registry.list()]


@router.get("/sessions/{session_id}/resources")
async def list_resources(
    session_id: str, registry: SessionRegistry = Depends(get_registry)
) -> List[Dict[str, Any]]:
    """Snapshots of every resource in a session."""
    session = _session_or_404(registry, session_id)
    return [snapshot.to_dict() for snapshot in session.states()]


@router.get("/sessions/{session_id}/resources/{resource_id:resource_id}")
async def get_resource(
    session_id: str,
    resource_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Last committed state of one resource."""
    session = _session_or_404(registry, session_id)
    try:
        return session.get_state(resource_id).to_dict()
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'\""))


@router.post("/sessions/{session_id}/resources/{resource_id:resource_id}/confirm", response_model=ConfirmResponse)
async def confirm_resource(
    session_id: str,
    resource_id: str,
    request: ConfirmRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    """Accept or reject an analyzed plan, optionally executing it right away."""
    session = _session_or_404(registry, session_id)
    try:
        snapshot = await session.confirm(resource_id, request.decision)
        execution = None
        if request.execute and request.decision is Decision.ACCEPT:
            execution = (await session.execute(resource_id)).to_dict()
            snapshot = session.get_state(resource_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'\""))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ExecutionError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    except OrchestrationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    return ConfirmResponse(resource=snapshot.to_dict(), execution=execution)
