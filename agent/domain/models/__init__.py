"""Runtime data models."""

from domain.models.events import EngineEventType, EventData
from domain.models.memory import (
    Actor,
    Fragment,
    FragmentFilter,
    FragmentPartition,
    MetadataCondition,
    MetadataOperator,
    Session,
)
from domain.models.turn_state import State, StateData, TurnPhase

__all__ = [
    "Actor",
    "EngineEventType",
    "EventData",
    "Fragment",
    "FragmentFilter",
    "FragmentPartition",
    "MetadataCondition",
    "MetadataOperator",
    "Session",
    "State",
    "StateData",
    "TurnPhase",
]
