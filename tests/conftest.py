"""Shared fixtures and test doubles."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.language_models import FakeListChatModel, GenericFakeChatModel

from domain.context.memory.sqlite_memory_store import SQLiteFragmentBackend
from domain.context.memory.vector_memory_store import InMemoryFragmentBackend
from domain.models.memory import Actor, Fragment, FragmentPartition, Session
from domain.models.turn_state import State, StateData
from domain.orchestration.manager.base_manager import BaseManager
from infrastructure.config.settings import Settings, Stores, build_stores
from infrastructure.llm.llm_client import LLMClient

EMBEDDING_SIZE = 8
ASSISTANT_ID = "assistant"


class FailingChatModel(FakeListChatModel):
    """Chat model whose provider is always down"""

    def _call(self, *args: Any, **kwargs: Any) -> str:
        raise RuntimeError("provider down")


class ToolCallingChatModel(GenericFakeChatModel):
    """Replays scripted messages and records the tools bound to it"""

    bound_tools: list = []

    def bind_tools(self, tools, **kwargs):
        self.bound_tools = list(tools)
        return self


class ScriptedManager(BaseManager):
    """Manager whose behavior is configured per test.

    Every hook call is appended to ``log`` as ``(manager_id, hook)``.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        manager_id: str,
        dependencies: Sequence[str] = (),
        log: Optional[List[tuple]] = None,
        contributions: Sequence[StateData] = (),
        fail_on: Optional[str] = None,
        process_delay: float = 0.0,
        post_process_delay: float = 0.0,
        store_on_post_process: bool = False,
        background_interval: Optional[float] = None,
    ):
        self.manager_id = manager_id
        self.dependencies = tuple(dependencies)
        self.background_interval = background_interval
        super().__init__(config)
        self.log = log if log is not None else []
        self.contributions = list(contributions)
        self.fail_on = fail_on
        self.process_delay = process_delay
        self.post_process_delay = post_process_delay
        self.store_on_post_process = store_on_post_process
        self.cycles = 0

    def _record(self, hook: str) -> None:
        self.log.append((self.manager_id, hook))
        if self.fail_on == hook:
            raise RuntimeError(f"{self.manager_id} broke in {hook}")

    async def process(self, state: State) -> None:
        if self.process_delay:
            await asyncio.sleep(self.process_delay)
        self._record("process")
        state.set_data(f"{self.manager_id}.seen", True, self.manager_id)

    async def context(self, state: State) -> List[StateData]:
        self._record("context")
        return list(self.contributions)

    async def post_process(self, state: State) -> None:
        if self.post_process_delay:
            await asyncio.sleep(self.post_process_delay)
        self._record("post_process")
        if self.store_on_post_process:
            await self.store(
                Fragment(
                    actor_id=state.actor_id,
                    session_id=state.session_id,
                    content=f"{self.manager_id} noted: {state.input}",
                )
            )

    async def run_background_cycle(self) -> None:
        self.cycles += 1


def make_stores(backend=None, embedding_dimensions: int = EMBEDDING_SIZE) -> Stores:
    settings = Settings(database_path="memory", embedding_dimensions=embedding_dimensions)
    return build_stores(settings, backend=backend)


def make_llm_client(responses: Sequence[str] = ("Hello from Nova",), embeddings: bool = True) -> LLMClient:
    return LLMClient(
        {"default": FakeListChatModel(responses=list(responses))},
        embeddings=DeterministicFakeEmbedding(size=EMBEDDING_SIZE) if embeddings else None,
    )


def manager_config(stores: Stores, partition: FragmentPartition = FragmentPartition.INSIGHT,
                   llm_client: Optional[LLMClient] = None) -> Dict[str, Any]:
    fragment_store = {
        FragmentPartition.INSIGHT: stores.insights,
        FragmentPartition.PERSONALITY: stores.personality,
        FragmentPartition.INTERACTION: stores.interactions,
    }[partition]
    return {
        "fragment_store": fragment_store,
        "interaction_store": stores.interactions,
        "actor_store": stores.actors,
        "session_store": stores.sessions,
        "llm_client": llm_client,
        "assistant_id": ASSISTANT_ID,
    }


async def seed_conversation(stores: Stores, actor_id: str = "user", session_id: str = "session") -> None:
    await stores.actors.upsert(Actor(id=actor_id, name="User"))
    await stores.actors.upsert(Actor(id=ASSISTANT_ID, name="Nova", is_assistant=True))
    await stores.sessions.upsert(Session(id=session_id))


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    if request.param == "memory":
        yield InMemoryFragmentBackend(embedding_dimensions=3)
        return
    backend = SQLiteFragmentBackend(":memory:", embedding_dimensions=3)
    yield backend
    asyncio.run(backend.close())


@pytest.fixture
def stores() -> Stores:
    return make_stores()
