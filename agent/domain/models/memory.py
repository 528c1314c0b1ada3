"""Conversational memory models: actors, sessions, fragments and query filters."""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FragmentPartition(str, Enum):
    """Well-known fragment partitions"""
    INTERACTION = "interaction"
    PERSONALITY = "personality"
    INSIGHT = "insight"


class Actor(BaseModel):
    """A participant in a conversation, human or assistant"""
    id: str = Field(min_length=1)
    name: str = ""
    is_assistant: bool = False


class Session(BaseModel):
    """One conversation thread"""
    id: str = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Fragment(BaseModel):
    """Immutable unit of conversational memory"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    actor_id: str
    session_id: str
    content: str
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @field_validator("embedding")
    @classmethod
    def _coerce_float32(cls, value: Optional[List[float]]) -> Optional[List[float]]:
        # Stored as float32 everywhere; coercing here keeps round-trips exact
        if value is None:
            return None
        return np.asarray(value, dtype=np.float32).tolist()

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class MetadataOperator(str, Enum):
    """Operators for metadata conditions"""
    EQUALS = "="
    NOT_EQUALS = "!="
    CONTAINS = "contains"
    IN = "in"


class MetadataCondition(BaseModel):
    key: str
    value: Any = None
    operator: MetadataOperator = MetadataOperator.EQUALS


class FragmentFilter(BaseModel):
    """Query descriptor for a fragment partition.

    Exact filters are combined with AND. When ``embedding`` is set results are
    ranked by vector distance, otherwise by recency.
    """
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: List[MetadataCondition] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    embedding: Optional[List[float]] = None
    limit: int = 10

    @field_validator("embedding")
    @classmethod
    def _coerce_float32(cls, value: Optional[List[float]]) -> Optional[List[float]]:
        if value is None:
            return None
        return np.asarray(value, dtype=np.float32).tolist()

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)
