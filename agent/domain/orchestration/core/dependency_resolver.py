"""
Execution order for registered managers.

Kahn's algorithm over the "depends on" edges. Among managers that are ready
at the same time, the one registered first runs first, so the same
registration list always yields the same order.
"""

import heapq
from typing import Dict, List, Sequence

from domain.errors import ConfigurationError
from domain.orchestration.manager.base_manager import BaseManager


def resolve_manager_order(managers: Sequence[BaseManager]) -> List[BaseManager]:
    """Order managers so each runs after all of its dependencies.

    Raises ConfigurationError for duplicate ids, dependencies on managers
    that are not registered, and cycles.
    """

    index: Dict[str, int] = {}
    for position, manager in enumerate(managers):
        manager_id = manager.get_id()
        if manager_id in index:
            raise ConfigurationError("duplicate manager id", [manager_id])
        index[manager_id] = position

    dependents: Dict[str, List[str]] = {manager_id: [] for manager_id in index}
    in_degree: Dict[str, int] = {manager_id: 0 for manager_id in index}

    for manager in managers:
        manager_id = manager.get_id()
        missing = [d for d in manager.get_dependencies() if d not in index]
        if missing:
            raise ConfigurationError(
                f"manager {manager_id} depends on unregistered managers", missing
            )
        for dependency in set(manager.get_dependencies()):
            dependents[dependency].append(manager_id)
            in_degree[manager_id] += 1

    ready = [index[m] for m, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: List[BaseManager] = []
    while ready:
        manager = managers[heapq.heappop(ready)]
        ordered.append(manager)
        for dependent in dependents[manager.get_id()]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(ordered) != len(managers):
        cyclic = sorted((m for m, degree in in_degree.items() if degree > 0), key=index.get)
        raise ConfigurationError("manager dependency cycle detected", cyclic)

    return ordered
