"""
Runtime configuration.

Every value can be supplied through a ``NOVA_`` prefixed environment
variable, e.g. ``NOVA_DATABASE_PATH=/var/lib/nova/memory.db``.
"""

from typing import Any, Dict, Mapping, Optional
import os

import structlog
from pydantic import BaseModel, ConfigDict, Field

from domain.context.memory.backend import FragmentBackend
from domain.context.memory.cache_memory_store import FragmentQueryCache
from domain.context.memory.fragment_store import ActorStore, FragmentStore, SessionStore
from domain.context.memory.sqlite_memory_store import SQLiteFragmentBackend
from domain.context.memory.vector_memory_store import InMemoryFragmentBackend
from domain.errors import load_config
from domain.models.memory import FragmentPartition

logger = structlog.get_logger(__name__)

ENV_PREFIX = "NOVA_"


class Settings(BaseModel):
    """Service settings"""
    service_name: str = "nova-agent"
    log_level: str = "INFO"
    log_format: str = "json"

    assistant_id: str = Field(default="assistant", min_length=1)
    assistant_name: str = "Nova"

    # "memory" keeps everything in process; anything else is a SQLite path
    database_path: str = "memory"
    embedding_dimensions: Optional[int] = Field(default=None, gt=0)
    cache_ttl_seconds: int = Field(default=300, gt=0)
    cache_max_entries: int = Field(default=1024, ge=1)

    recent_interaction_limit: int = Field(default=20, ge=1)
    turn_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    llm_timeout_seconds: Optional[float] = Field(default=60.0, gt=0)

    # langchain "provider:model" identifiers
    default_model: str = "openai:gpt-4o-mini"
    fast_model: Optional[str] = None
    advanced_model: Optional[str] = None
    embedding_model: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read settings from ``NOVA_*`` variables; unset values keep their defaults"""

        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return load_config(cls, values)


class Stores(BaseModel):
    """Stores sharing one backend and one query cache"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    backend: FragmentBackend
    cache: FragmentQueryCache
    actors: ActorStore
    sessions: SessionStore
    interactions: FragmentStore
    personality: FragmentStore
    insights: FragmentStore

    async def close(self) -> None:
        await self.backend.close()


def build_backend(settings: Settings) -> FragmentBackend:
    if settings.database_path == "memory":
        return InMemoryFragmentBackend(embedding_dimensions=settings.embedding_dimensions)
    return SQLiteFragmentBackend(settings.database_path, embedding_dimensions=settings.embedding_dimensions)


def build_stores(settings: Settings, backend: Optional[FragmentBackend] = None) -> Stores:
    """Create the backend and every well-known store on top of it"""

    backend = backend if backend is not None else build_backend(settings)
    cache = FragmentQueryCache(default_ttl=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries)

    def fragment_store(partition: FragmentPartition) -> FragmentStore:
        return FragmentStore(backend, partition, cache=cache, cache_ttl=settings.cache_ttl_seconds)

    logger.info("Stores created", backend=type(backend).__name__, database_path=settings.database_path)
    return Stores(
        backend=backend,
        cache=cache,
        actors=ActorStore(backend),
        sessions=SessionStore(backend),
        interactions=fragment_store(FragmentPartition.INTERACTION),
        personality=fragment_store(FragmentPartition.PERSONALITY),
        insights=fragment_store(FragmentPartition.INSIGHT),
    )
