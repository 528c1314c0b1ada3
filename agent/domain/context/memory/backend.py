from abc import ABC, abstractmethod
from typing import List, Optional

from domain.models.memory import Actor, Fragment, FragmentFilter, Session


class FragmentBackend(ABC):
    """Storage engine behind the actor, session and fragment stores.

    Fragments live in named partitions that share one schema. Implementations
    must be safe under concurrent use from many turns and background tasks.
    """

    def __init__(self, embedding_dimensions: Optional[int] = None):
        self.embedding_dimensions = embedding_dimensions

    def pin_embedding_dimensions(self, size: int) -> int:
        """Fix the embedding size on first use; returns the size in force"""

        if self.embedding_dimensions is None:
            self.embedding_dimensions = size
        return self.embedding_dimensions

    @abstractmethod
    async def upsert_actor(self, actor: Actor) -> Actor:
        pass

    @abstractmethod
    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        pass

    @abstractmethod
    async def upsert_session(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    async def insert_fragment(self, partition: str, fragment: Fragment) -> bool:
        """Insert a fragment; False when the id already exists in the partition"""
        pass

    @abstractmethod
    async def get_fragment(self, partition: str, fragment_id: str) -> Optional[Fragment]:
        pass

    @abstractmethod
    async def search_fragments(self, partition: str, query: FragmentFilter) -> List[Fragment]:
        """Matching fragments of one partition, ordered and truncated"""
        pass

    async def close(self) -> None:
        pass
