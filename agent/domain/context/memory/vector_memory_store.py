from typing import Dict, List, Optional
import asyncio

from domain.context.context_ranker import ContextRanker, default_ranker
from domain.context.memory.backend import FragmentBackend
from domain.models.memory import Actor, Fragment, FragmentFilter, Session


class InMemoryFragmentBackend(FragmentBackend):
    """Process-local vector store for fragments, actors and sessions"""

    def __init__(self, embedding_dimensions: Optional[int] = None, ranker: Optional[ContextRanker] = None):
        super().__init__(embedding_dimensions)
        self.actors: Dict[str, Actor] = {}
        self.sessions: Dict[str, Session] = {}
        self.partitions: Dict[str, Dict[str, Fragment]] = {}
        self.ranker = ranker or default_ranker
        self._lock = asyncio.Lock()

    async def upsert_actor(self, actor: Actor) -> Actor:
        async with self._lock:
            self.actors[actor.id] = actor.model_copy(deep=True)
            return actor

    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        async with self._lock:
            actor = self.actors.get(actor_id)
            return actor.model_copy(deep=True) if actor else None

    async def upsert_session(self, session: Session) -> Session:
        async with self._lock:
            self.sessions[session.id] = session.model_copy(deep=True)
            return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            session = self.sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def insert_fragment(self, partition: str, fragment: Fragment) -> bool:
        """Add a fragment to a partition"""

        async with self._lock:
            fragments = self.partitions.setdefault(partition, {})
            if fragment.id in fragments:
                return False
            fragments[fragment.id] = fragment.model_copy(deep=True)
            return True

    async def get_fragment(self, partition: str, fragment_id: str) -> Optional[Fragment]:
        async with self._lock:
            fragment = self.partitions.get(partition, {}).get(fragment_id)
            return fragment.model_copy(deep=True) if fragment else None

    async def search_fragments(self, partition: str, query: FragmentFilter) -> List[Fragment]:
        """Search a partition by exact filters and vector similarity"""

        async with self._lock:
            candidates = list(self.partitions.get(partition, {}).values())

        ranked = self.ranker.rank(candidates, query)
        return [f.model_copy(deep=True) for f in ranked]
