from typing import Any, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from domain.models.memory import utc_now


class EngineEventType(str, Enum):
    """Events published by the engine itself"""
    INTERACTION_STORED = "interaction.stored"
    TURN_COMPLETED = "turn.completed"


class EventData(BaseModel):
    """Notification passed between managers through the event bus"""
    type: str
    payload: Any = None
    source_manager_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
