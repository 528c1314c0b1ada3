"""
Repository-style stores over a FragmentBackend.

ActorStore and SessionStore hold identities. A FragmentStore is bound to one
partition and fronts the backend with a read-through query cache that is
invalidated on every write.
"""

from typing import List, Optional, Union
import json

import structlog

from domain.context.memory.backend import FragmentBackend
from domain.context.memory.cache_memory_store import (
    FragmentQueryCache,
    filter_fingerprint,
    filter_scope,
)
from domain.errors import ConfigurationError, NotFoundError, ValidationError
from domain.models.memory import (
    Actor,
    Fragment,
    FragmentFilter,
    FragmentPartition,
    MetadataOperator,
    Session,
    utc_now,
)
from infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


class ActorStore:
    """Create-or-update store for actors"""

    def __init__(self, backend: FragmentBackend):
        self.backend = backend

    async def upsert(self, actor: Actor) -> Actor:
        await self.backend.upsert_actor(actor)
        logger.debug("Actor upserted", actor_id=actor.id, is_assistant=actor.is_assistant)
        return actor

    async def get(self, actor_id: str) -> Optional[Actor]:
        return await self.backend.get_actor(actor_id)


class SessionStore:
    """Create-or-update store for sessions"""

    def __init__(self, backend: FragmentBackend):
        self.backend = backend

    async def upsert(self, session: Session) -> Session:
        await self.backend.upsert_session(session)
        logger.debug("Session upserted", session_id=session.id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        return await self.backend.get_session(session_id)


class FragmentStore:
    """Append-only fragment log for a single partition"""

    def __init__(
        self,
        backend: FragmentBackend,
        partition: Union[str, FragmentPartition],
        cache: Optional[FragmentQueryCache] = None,
        cache_ttl: Optional[int] = None,
    ):
        partition = partition.value if isinstance(partition, FragmentPartition) else partition
        if not partition:
            raise ConfigurationError("fragment store requires a partition name")

        self.backend = backend
        self.partition = partition
        self.cache = cache if cache is not None else FragmentQueryCache()
        self.cache_ttl = cache_ttl

    async def store_fragment(self, fragment: Fragment) -> Fragment:
        """Validate and persist a fragment, then invalidate affected queries"""

        await self._validate_fragment(fragment, pin_dimensions=True)

        if fragment.created_at is None:
            fragment = fragment.model_copy(update={"created_at": utc_now()})

        if not await self.backend.insert_fragment(self.partition, fragment):
            raise ValidationError(
                f"fragment {fragment.id} already exists in partition {self.partition}"
            )

        await self.cache.invalidate(self.partition, fragment.session_id)

        logger.debug(
            "Fragment stored",
            partition=self.partition,
            fragment_id=fragment.id,
            session_id=fragment.session_id,
        )
        return fragment

    async def validate_fragment(self, fragment: Fragment) -> None:
        """Raise the error store_fragment would raise, without writing"""

        await self._validate_fragment(fragment, pin_dimensions=False)

    async def query(self, query: FragmentFilter) -> List[Fragment]:
        """Read-through query of this partition"""

        self._validate_filter(query)

        key = filter_fingerprint(self.partition, query)
        cached = await self.cache.get(key)
        if cached is not None:
            metrics.increment_counter("fragment_cache.hit", tags={"partition": self.partition})
            return cached
        metrics.increment_counter("fragment_cache.miss", tags={"partition": self.partition})

        scope = filter_scope(self.partition, query)
        generation = await self.cache.generation(scope)

        results = await self.backend.search_fragments(self.partition, query)

        await self.cache.set(key, results, scope=scope, generation=generation, ttl=self.cache_ttl)
        return results

    async def get(self, fragment_id: str) -> Optional[Fragment]:
        return await self.backend.get_fragment(self.partition, fragment_id)

    async def _validate_fragment(self, fragment: Fragment, pin_dimensions: bool) -> None:
        if await self.backend.get_actor(fragment.actor_id) is None:
            raise NotFoundError(f"actor {fragment.actor_id} does not exist")
        if await self.backend.get_session(fragment.session_id) is None:
            raise NotFoundError(f"session {fragment.session_id} does not exist")

        try:
            json.dumps(fragment.metadata)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"fragment metadata is not JSON serializable: {e}") from e

        # No await between the check and the pin
        self._check_dimensions(fragment.embedding, "fragment embedding", pin=pin_dimensions)

    def _check_dimensions(self, embedding: Optional[List[float]], label: str, pin: bool = False) -> None:
        if embedding is None:
            return
        if len(embedding) == 0:
            raise ValidationError(f"{label} is empty")
        if pin:
            expected = self.backend.pin_embedding_dimensions(len(embedding))
        else:
            expected = self.backend.embedding_dimensions
        if expected is not None and len(embedding) != expected:
            raise ValidationError(
                f"{label} has {len(embedding)} dimensions, expected {expected}"
            )

    def _validate_filter(self, query: FragmentFilter) -> None:
        if query.limit < 1:
            raise ValidationError("filter limit must be at least 1")
        if (
            query.start_time is not None
            and query.end_time is not None
            and query.start_time > query.end_time
        ):
            raise ValidationError("filter start_time is after end_time")
        self._check_dimensions(query.embedding, "filter embedding")

        for condition in query.metadata:
            if not condition.key:
                raise ValidationError("metadata condition requires a key")
            if condition.operator == MetadataOperator.IN and not isinstance(condition.value, (list, tuple)):
                raise ValidationError(f"metadata condition '{condition.key}' with 'in' needs a list value")
