from abc import ABC
from typing import Any, ClassVar, List, Mapping, Optional, Sequence, Tuple, Union
from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from domain.context.memory.fragment_store import ActorStore, FragmentStore, SessionStore
from domain.errors import ConfigurationError, load_config
from domain.events.event_bus import EventBus, EventHandler
from domain.models.events import EventData
from domain.models.memory import Fragment, utc_now
from domain.models.turn_state import State, StateData
from domain.orchestration.core.background import BackgroundTask, periodic
from infrastructure.llm.llm_client import LLMClient


class ManagerConfig(BaseModel):
    """Collaborators handed to a manager at construction"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    fragment_store: FragmentStore
    interaction_store: FragmentStore
    actor_store: ActorStore
    session_store: SessionStore
    llm_client: Optional[LLMClient] = None
    assistant_id: str
    assistant_name: str = ""


class BaseManager(ABC):
    """Base class for pluggable turn-pipeline managers.

    Subclasses set ``manager_id`` and optionally ``dependencies`` (ids of
    managers that must run first) and override the hooks they need. The
    engine owns every registered manager and is the only caller of its hooks.
    """

    manager_id: ClassVar[str] = ""
    dependencies: ClassVar[Sequence[str]] = ()

    # Seconds between run_background_cycle calls; None disables the worker
    background_interval: ClassVar[Optional[float]] = None

    def __init__(self, config: Union[ManagerConfig, Mapping[str, Any]]):
        config = load_config(ManagerConfig, config)
        if not self.manager_id:
            raise ConfigurationError(f"{type(self).__name__} does not declare a manager_id")
        if not config.assistant_id:
            raise ConfigurationError("manager config requires an assistant_id", [self.manager_id])

        self.config = config
        self.fragment_store = config.fragment_store
        self.interaction_store = config.interaction_store
        self.actor_store = config.actor_store
        self.session_store = config.session_store
        self.llm_client = config.llm_client
        self.logger = structlog.get_logger(type(self).__module__).bind(manager_id=self.manager_id)

        self._event_bus: Optional[EventBus] = None
        self._pending_handlers: List[Tuple[Union[str, Enum], EventHandler]] = []
        self._background_task: Optional[BackgroundTask] = None
        self.created_at: datetime = utc_now()

    def get_id(self) -> str:
        return self.manager_id

    def get_dependencies(self) -> List[str]:
        return list(self.dependencies)

    # ── Turn hooks ────────────────────────────────────────────────────

    async def process(self, state: State) -> None:
        """First pass over the turn; may write into ``state.data``"""

    async def context(self, state: State) -> List[StateData]:
        """Retrieval contributions merged into the state before composition"""
        return []

    async def post_process(self, state: State) -> None:
        """Runs after the response has been stored"""

    async def store(self, fragment: Fragment) -> Fragment:
        """Persist a fragment into this manager's partition"""
        return await self.fragment_store.store_fragment(fragment)

    # ── Background work ───────────────────────────────────────────────

    async def run_background_cycle(self) -> None:
        """One unit of periodic maintenance"""

    def start_background_processes(self) -> Optional[BackgroundTask]:
        if self.background_interval is None:
            return None
        if self._background_task is None:
            self._background_task = BackgroundTask(
                f"{self.manager_id}-background",
                periodic(self.background_interval, self.run_background_cycle, self.manager_id),
            )
        return self._background_task.start()

    async def stop_background_processes(self) -> None:
        if self._background_task is not None:
            await self._background_task.stop()

    # ── Events ────────────────────────────────────────────────────────

    def bind_event_bus(self, event_bus: EventBus) -> None:
        """Attach the engine's bus and flush subscriptions made before binding"""

        self._event_bus = event_bus
        pending, self._pending_handlers = self._pending_handlers, []
        for event_type, handler in pending:
            event_bus.register_event_handler(event_type, handler)

    def register_event_handler(self, event_type: Union[str, Enum], handler: EventHandler) -> None:
        if self._event_bus is None:
            self._pending_handlers.append((event_type, handler))
        else:
            self._event_bus.register_event_handler(event_type, handler)

    async def trigger_event(self, event_type: Union[str, Enum], payload: Any = None) -> int:
        if self._event_bus is None:
            raise ConfigurationError("manager is not registered with an engine", [self.manager_id])

        event = EventData(
            type=event_type.value if isinstance(event_type, Enum) else event_type,
            payload=payload,
            source_manager_id=self.manager_id,
        )
        return await self._event_bus.trigger_event(event)

    def get_info(self) -> dict:
        """Get manager information"""
        return {
            "manager_id": self.manager_id,
            "dependencies": self.get_dependencies(),
            "partition": self.fragment_store.partition,
            "background": self._background_task is not None and self._background_task.running,
            "created_at": self.created_at.isoformat(),
        }
