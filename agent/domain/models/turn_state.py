from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from domain.errors import StateTransitionError
from domain.models.memory import Fragment, utc_now


class TurnPhase(str, Enum):
    """Turn lifecycle phases"""
    CREATED = "created"
    PROCESSED = "processed"
    RESPONDED = "responded"
    POST_PROCESSED = "post_processed"
    FAILED = "failed"


_TRANSITIONS = {
    TurnPhase.CREATED: {TurnPhase.PROCESSED},
    TurnPhase.PROCESSED: {TurnPhase.RESPONDED, TurnPhase.POST_PROCESSED},
    TurnPhase.RESPONDED: {TurnPhase.POST_PROCESSED},
    TurnPhase.POST_PROCESSED: set(),
    TurnPhase.FAILED: set(),
}


class StateData(BaseModel):
    """A keyed contribution to the turn state"""
    key: str
    value: Any = None
    source_manager_id: Optional[str] = None


class State(BaseModel):
    """Turn-scoped context threaded through the manager pipeline.

    A State belongs to exactly one turn. Managers contribute keyed data; when
    two managers write the same key the one later in execution order wins.
    """
    id: str = Field(default_factory=lambda: uuid4().hex)
    actor_id: str
    session_id: str
    input: str
    input_fragment: Fragment
    recent_interactions: List[Fragment] = Field(default_factory=list)
    data: Dict[str, StateData] = Field(default_factory=dict)
    phase: TurnPhase = TurnPhase.CREATED
    response: Optional[Fragment] = None
    created_at: datetime = Field(default_factory=utc_now)

    def set_data(self, key: str, value: Any, source_manager_id: Optional[str] = None) -> None:
        self.data[key] = StateData(key=key, value=value, source_manager_id=source_manager_id)

    def get_data(self, key: str, default: Any = None) -> Any:
        entry = self.data.get(key)
        return entry.value if entry is not None else default

    def merge(self, contributions: List[StateData], source_manager_id: Optional[str] = None) -> None:
        """Apply contributions in order; later entries overwrite earlier ones"""
        for item in contributions:
            self.set_data(item.key, item.value, item.source_manager_id or source_manager_id)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (TurnPhase.POST_PROCESSED, TurnPhase.FAILED)

    def require_phase(self, *phases: TurnPhase) -> None:
        if self.phase not in phases:
            expected = ", ".join(p.value for p in phases)
            raise StateTransitionError(
                f"turn {self.id} is {self.phase.value}, expected one of: {expected}"
            )

    def advance(self, phase: TurnPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise StateTransitionError(
                f"turn {self.id} cannot move from {self.phase.value} to {phase.value}"
            )
        self.phase = phase

    def fail(self) -> None:
        if not self.is_terminal:
            self.phase = TurnPhase.FAILED
