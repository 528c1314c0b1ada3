"""
Turn orchestration.

The engine owns the registered managers and drives one turn at a time through
them:

    new_state -> process -> (compose) -> generate_response -> post_process

Managers run strictly in dependency order inside a turn. Separate turns may
run concurrently; they share only the stores and the event bus.
"""

from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union
import asyncio

import structlog
from langchain_core.messages import BaseMessage
from langchain_core.tools import BaseTool
from pydantic import BaseModel, ConfigDict, Field

from domain.context.memory.fragment_store import ActorStore, FragmentStore, SessionStore
from domain.errors import (
    ConfigurationError,
    NotFoundError,
    PipelineError,
    PostProcessError,
    load_config,
)
from domain.events.event_bus import EventBus
from domain.models.events import EngineEventType, EventData
from domain.models.memory import Actor, Fragment, FragmentFilter
from domain.models.turn_state import State, TurnPhase
from domain.orchestration.core.dependency_resolver import resolve_manager_order
from domain.orchestration.manager.base_manager import BaseManager
from infrastructure.llm.llm_client import LLMClient, ModelType, message_text
from infrastructure.observability.logging import metrics, turn_context

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EngineConfig(BaseModel):
    """Everything an engine needs, validated before any manager runs"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    assistant_id: str = Field(min_length=1)
    assistant_name: str = ""
    actor_store: ActorStore
    session_store: SessionStore
    interaction_store: FragmentStore
    llm_client: LLMClient
    managers: List[BaseManager] = Field(default_factory=list)
    event_bus: Optional[EventBus] = None
    recent_interaction_limit: int = Field(default=20, ge=1)
    persist_input: bool = True
    turn_timeout: Optional[float] = Field(default=None, gt=0)


class PostProcessResult(BaseModel):
    """Outcome of the post-processing stage.

    ``errors`` lists managers whose post_process failed; the stored
    fragments stay in place regardless.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    response: Fragment
    input_fragment: Optional[Fragment] = None
    errors: List[PostProcessError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Engine:
    """Drives turns through the registered managers"""

    def __init__(self, config: Union[EngineConfig, Mapping[str, Any]]):
        config = load_config(EngineConfig, config)

        self.config = config
        self.assistant_id = config.assistant_id
        self.actor_store = config.actor_store
        self.session_store = config.session_store
        self.interaction_store = config.interaction_store
        self.llm_client = config.llm_client
        self.event_bus = config.event_bus if config.event_bus is not None else EventBus()

        self._check_manager_wiring(config.managers)
        self.managers: List[BaseManager] = resolve_manager_order(config.managers)
        for manager in self.managers:
            manager.bind_event_bus(self.event_bus)

        self._started = False

        logger.info(
            "Engine initialized",
            assistant_id=self.assistant_id,
            managers=[m.get_id() for m in self.managers],
        )

    def _check_manager_wiring(self, managers: Sequence[BaseManager]) -> None:
        wrong_assistant = [
            m.get_id() for m in managers if m.config.assistant_id != self.assistant_id
        ]
        if wrong_assistant:
            raise ConfigurationError(
                f"managers configured for a different assistant than {self.assistant_id}",
                wrong_assistant,
            )

    def get_manager(self, manager_id: str) -> Optional[BaseManager]:
        for manager in self.managers:
            if manager.get_id() == manager_id:
                return manager
        return None

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Register the assistant actor and start manager background work"""

        if self._started:
            return

        await self.actor_store.upsert(
            Actor(id=self.assistant_id, name=self.config.assistant_name, is_assistant=True)
        )
        for manager in self.managers:
            manager.start_background_processes()

        self._started = True
        logger.info("Engine started", assistant_id=self.assistant_id)

    async def stop(self) -> None:
        """Stop background work in reverse order, waiting for each to finish"""

        if not self._started:
            return

        for manager in reversed(self.managers):
            try:
                await manager.stop_background_processes()
            except Exception as e:
                logger.error("Failed to stop manager", manager_id=manager.get_id(), error=str(e))

        self._started = False
        logger.info("Engine stopped", assistant_id=self.assistant_id)

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ── Turn operations ───────────────────────────────────────────────

    async def new_state(
        self,
        actor_id: str,
        session_id: str,
        input: str,
        timeout: Optional[float] = None,
    ) -> State:
        """Create the state for a new turn"""

        if await self.actor_store.get(actor_id) is None:
            raise NotFoundError(f"actor {actor_id} does not exist")
        if await self.session_store.get(session_id) is None:
            raise NotFoundError(f"session {session_id} does not exist")

        try:
            recent, embedding = await self._with_deadline(self._load_turn_context(session_id, input), timeout)
        except asyncio.TimeoutError as e:
            logger.error("Turn setup timed out", session_id=session_id, timeout=self._timeout(timeout))
            raise PipelineError("turn setup timed out") from e

        input_fragment = Fragment(
            actor_id=actor_id,
            session_id=session_id,
            content=input,
            embedding=embedding,
            metadata={"role": "user"},
        )
        state = State(
            actor_id=actor_id,
            session_id=session_id,
            input=input,
            input_fragment=input_fragment,
            recent_interactions=recent,
        )
        logger.debug("Turn created", turn_id=state.id, session_id=session_id, recent=len(recent))
        return state

    async def _load_turn_context(self, session_id: str, input: str) -> Tuple[List[Fragment], Optional[List[float]]]:
        recent = await self.interaction_store.query(
            FragmentFilter(session_id=session_id, limit=self.config.recent_interaction_limit)
        )
        embedding = None
        if self.llm_client.has_embeddings:
            embedding = await self.llm_client.generate_embeddings(input)
        return recent, embedding

    async def process(self, state: State, timeout: Optional[float] = None) -> State:
        """Run every manager's process hook, then every context hook.

        The first failure marks the state FAILED and raises PipelineError;
        managers after the failing one do not run and nothing is stored.
        """

        state.require_phase(TurnPhase.CREATED)

        with turn_context(state.id, state.session_id, state.actor_id):
            try:
                await self._with_deadline(self._run_pipeline(state), timeout)
            except asyncio.TimeoutError as e:
                state.fail()
                logger.error("Turn pipeline timed out", timeout=self._timeout(timeout))
                raise PipelineError("turn pipeline timed out") from e
            except PipelineError:
                state.fail()
                raise

            state.advance(TurnPhase.PROCESSED)
            logger.info("Turn processed", data_keys=sorted(state.data))
        return state

    async def _run_pipeline(self, state: State) -> None:
        for manager in self.managers:
            await self._run_hook(manager, "process", manager.process(state))

        for manager in self.managers:
            contributions = await self._run_hook(manager, "context", manager.context(state))
            state.merge(contributions or [], source_manager_id=manager.get_id())

    async def _run_hook(self, manager: BaseManager, hook: str, call: Awaitable[T]) -> T:
        manager_id = manager.get_id()
        try:
            with metrics.measure(f"manager.{hook}", tags={"manager_id": manager_id}):
                return await call
        except Exception as e:
            logger.error("Manager hook failed", manager_id=manager_id, hook=hook, error=str(e))
            raise PipelineError(
                f"manager {manager_id} failed in {hook}: {e}", manager_id=manager_id, hook=hook
            ) from e

    async def generate_response(
        self,
        messages: Sequence[BaseMessage],
        session_id: str,
        tools: Sequence[BaseTool] = (),
        model_type: Union[ModelType, str] = ModelType.DEFAULT,
        state: Optional[State] = None,
        timeout: Optional[float] = None,
    ) -> Fragment:
        """One model call; returns the unsaved assistant fragment"""

        if state is not None:
            state.require_phase(TurnPhase.PROCESSED)

        try:
            with metrics.measure("llm.completion", tags={"model_type": ModelType(model_type).value}):
                message = await self._with_deadline(
                    self.llm_client.generate_completion(messages, tools=tools, model_type=model_type),
                    timeout,
                )
        except asyncio.TimeoutError as e:
            if state is not None:
                state.fail()
            raise PipelineError("model call timed out") from e
        except Exception:
            if state is not None:
                state.fail()
            raise

        metadata: Dict[str, Any] = {"role": "assistant", "model_type": ModelType(model_type).value}
        if message.tool_calls:
            metadata["tool_calls"] = [
                {"id": call.get("id"), "name": call["name"], "args": call["args"]}
                for call in message.tool_calls
            ]

        response = Fragment(
            actor_id=self.assistant_id,
            session_id=session_id,
            content=message_text(message),
            metadata=metadata,
        )

        if state is not None:
            state.response = response
            state.advance(TurnPhase.RESPONDED)
        return response

    async def post_process(
        self,
        response: Fragment,
        state: State,
        timeout: Optional[float] = None,
    ) -> PostProcessResult:
        """Store the interaction, then run every manager's post_process hook.

        Both fragments are validated before either is written. Once they are
        stored, a manager failure or a hook running past the deadline becomes
        a PostProcessError in the result; it never undoes the stored fragments.
        """

        state.require_phase(TurnPhase.PROCESSED, TurnPhase.RESPONDED)

        with turn_context(state.id, state.session_id, state.actor_id):
            deadline = self._deadline(timeout)
            try:
                stored_input, stored_response = await self._with_deadline(
                    self._store_interaction(response, state), self._remaining(deadline)
                )
            except asyncio.TimeoutError as e:
                state.fail()
                logger.error("Storing the interaction timed out", timeout=self._timeout(timeout))
                raise PipelineError("storing the interaction timed out") from e
            except Exception:
                state.fail()
                raise

            errors = await self._run_post_process_hooks(state, deadline)

            state.advance(TurnPhase.POST_PROCESSED)
            await self._publish(
                EngineEventType.TURN_COMPLETED,
                {"turn_id": state.id, "session_id": state.session_id, "errors": [e.manager_id for e in errors]},
            )

            logger.info("Turn completed", response_id=stored_response.id, errors=len(errors))
            return PostProcessResult(response=stored_response, input_fragment=stored_input, errors=errors)

    async def _store_interaction(self, response: Fragment, state: State) -> Tuple[Optional[Fragment], Fragment]:
        if self.config.persist_input:
            await self.interaction_store.validate_fragment(state.input_fragment)
        await self.interaction_store.validate_fragment(response)

        # Input, then response
        stored_input = None
        if self.config.persist_input:
            stored_input = await self.interaction_store.store_fragment(state.input_fragment)
            state.input_fragment = stored_input
            await self._publish(EngineEventType.INTERACTION_STORED, stored_input)

        stored_response = await self.interaction_store.store_fragment(response)
        state.response = stored_response
        await self._publish(EngineEventType.INTERACTION_STORED, stored_response)
        return stored_input, stored_response

    async def _run_post_process_hooks(self, state: State, deadline: Optional[float]) -> List[PostProcessError]:
        errors: List[PostProcessError] = []
        for manager in self.managers:
            manager_id = manager.get_id()
            try:
                with metrics.measure("manager.post_process", tags={"manager_id": manager_id}):
                    await asyncio.wait_for(manager.post_process(state), timeout=self._remaining(deadline))
            except asyncio.TimeoutError:
                logger.warning("Manager post-processing timed out", manager_id=manager_id)
                errors.append(PostProcessError(f"manager {manager_id} timed out in post_process", manager_id))
            except Exception as e:
                logger.warning("Manager post-processing failed", manager_id=manager_id, error=str(e))
                errors.append(PostProcessError(f"manager {manager_id} failed in post_process: {e}", manager_id))
        return errors

    async def _publish(self, event_type: EngineEventType, payload: Any) -> int:
        return await self.event_bus.trigger_event(EventData(type=event_type.value, payload=payload))

    # ── Helpers ───────────────────────────────────────────────────────

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.config.turn_timeout

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        timeout = self._timeout(timeout)
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _with_deadline(self, call: Awaitable[T], timeout: Optional[float]) -> T:
        return await asyncio.wait_for(call, timeout=self._timeout(timeout))

    def get_info(self) -> dict:
        return {
            "assistant_id": self.assistant_id,
            "started": self._started,
            "managers": [m.get_info() for m in self.managers],
        }
