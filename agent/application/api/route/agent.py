from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from application.chat.chat_service import ChatService, ChatTurn
from domain.errors import NotFoundError
from domain.models.memory import Actor, Fragment, FragmentFilter, Session
from domain.orchestration.core.engine import Engine

router = APIRouter(prefix="/api/v1")


class ActorRequest(BaseModel):
    name: str = ""
    is_assistant: bool = False


class SessionRequest(BaseModel):
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    message: str = Field(min_length=1)


class ChatResponse(BaseModel):
    turn_id: str
    session_id: str
    response: str
    response_id: str
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_turn(cls, turn: ChatTurn) -> "ChatResponse":
        return cls(
            turn_id=turn.turn_id,
            session_id=turn.session_id,
            response=turn.response.content,
            response_id=turn.response.id,
            warnings=turn.warnings,
        )


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


@router.put("/actors/{actor_id}", response_model=Actor)
async def upsert_actor(actor_id: str, body: ActorRequest, engine: Engine = Depends(get_engine)):
    """Create or update an actor"""
    actor = Actor(id=actor_id, name=body.name, is_assistant=body.is_assistant)
    return await engine.actor_store.upsert(actor)


@router.put("/sessions/{session_id}", response_model=Session)
async def upsert_session(session_id: str, body: SessionRequest, engine: Engine = Depends(get_engine)):
    """Create or update a session"""
    return await engine.session_store.upsert(Session(id=session_id, metadata=body.metadata))


@router.post("/sessions/{session_id}/chat", response_model=ChatResponse)
async def chat(session_id: str, body: ChatRequest, service: ChatService = Depends(get_chat_service)):
    """Run one full turn and return the assistant's reply"""
    turn = await service.chat(body.actor_id, session_id, body.message)
    return ChatResponse.from_turn(turn)


@router.get("/sessions/{session_id}/interactions", response_model=List[Fragment])
async def list_interactions(
    session_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    actor_id: Optional[str] = None,
    engine: Engine = Depends(get_engine),
):
    """Most recent interaction fragments of a session, newest first"""
    if await engine.session_store.get(session_id) is None:
        raise NotFoundError(f"session {session_id} does not exist")

    fragments = await engine.interaction_store.query(
        FragmentFilter(session_id=session_id, actor_id=actor_id, limit=limit)
    )
    # Embeddings stay server side
    return [f.model_copy(update={"embedding": None}) for f in fragments]


class ToolInfo(BaseModel):
    name: str
    description: str = ""


@router.get("/tools", response_model=List[ToolInfo])
async def list_tools(q: Optional[str] = None, service: ChatService = Depends(get_chat_service)):
    """Registered tools, optionally filtered by name or description"""
    registry = service.tool_registry
    tools = registry.search_tools(q) if q else registry.get_tools()
    return [ToolInfo(name=t.name, description=t.description or "") for t in tools]


@router.get("/tools/{tool_name}", response_model=ToolInfo)
async def get_tool(tool_name: str, service: ChatService = Depends(get_chat_service)):
    tool = service.tool_registry.find_tool(tool_name)
    if tool is None:
        raise NotFoundError(f"tool {tool_name} is not registered")
    return ToolInfo(name=tool.name, description=tool.description or "")
