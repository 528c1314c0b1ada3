from typing import Iterable, List, Sequence

import numpy as np

from domain.models.memory import Fragment, FragmentFilter, MetadataCondition, MetadataOperator


_MISSING = object()


class ContextRanker:
    """Matches fragments against exact filters and ranks them by relevance"""

    def matches_condition(self, metadata: dict, condition: MetadataCondition) -> bool:
        """Evaluate one metadata condition; a missing key never matches"""

        stored = metadata.get(condition.key, _MISSING)
        if stored is _MISSING:
            return False

        operator = condition.operator
        if operator == MetadataOperator.EQUALS:
            return stored == condition.value
        if operator == MetadataOperator.NOT_EQUALS:
            return stored != condition.value
        if operator == MetadataOperator.CONTAINS:
            if isinstance(stored, str):
                return isinstance(condition.value, str) and condition.value in stored
            if isinstance(stored, (list, tuple, set, dict)):
                try:
                    return condition.value in stored
                except TypeError:  # unhashable value against a dict or set
                    return False
            return False
        if operator == MetadataOperator.IN:
            return stored in (condition.value or [])
        return False

    def matches(self, fragment: Fragment, query: FragmentFilter) -> bool:
        """True when the fragment satisfies every exact filter"""

        if query.actor_id is not None and fragment.actor_id != query.actor_id:
            return False
        if query.session_id is not None and fragment.session_id != query.session_id:
            return False
        if query.start_time is not None and fragment.created_at < query.start_time:
            return False
        if query.end_time is not None and fragment.created_at > query.end_time:
            return False
        if query.embedding is not None and not fragment.embedding:
            return False

        return all(self.matches_condition(fragment.metadata, c) for c in query.metadata)

    def cosine_distance(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine distance in [0, 2]; zero vectors are treated as orthogonal"""

        va = np.asarray(a, dtype=np.float32)
        vb = np.asarray(b, dtype=np.float32)
        norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if norm == 0.0:
            return 1.0
        return float(1.0 - np.dot(va, vb) / norm)

    def rank(self, fragments: Iterable[Fragment], query: FragmentFilter) -> List[Fragment]:
        """Filter, order and truncate candidate fragments for a query"""

        candidates = [f for f in fragments if self.matches(f, query)]

        # Most recent first; a stable sort keeps this as the tie-break below
        candidates.sort(key=lambda f: f.created_at, reverse=True)

        if query.embedding is not None:
            target = np.asarray(query.embedding, dtype=np.float32)
            candidates.sort(key=lambda f: self.cosine_distance(target, f.embedding))

        return candidates[:query.limit]


default_ranker = ContextRanker()
