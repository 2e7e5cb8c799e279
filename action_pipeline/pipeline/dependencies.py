"""
Sub-action dependency ordering.

Kahn's algorithm over sibling ``dependsOn`` edges, grouped into levels: every
sub-action appears in a later level than all of its dependencies, and
members of one level are independent of each other. Order inside a level
follows the original sub-action order. Cycles and references to unknown
siblings raise DependencyError instead of looping.
"""

from typing import Dict, List, Sequence

from action_pipeline.models.action import ProposedAction, SubAction


class DependencyError(Exception):
    """A dependency cycle or a reference to a sub-action that does not exist."""
    pass


def order_sub_actions(sub_actions: Sequence[SubAction]) -> List[List[SubAction]]:
    """Topological levels of ``sub_actions``."""
    position: Dict[str, int] = {}
    for index, sub in enumerate(sub_actions):
        if sub.id in position:
            raise DependencyError(f"Duplicate sub-action id {sub.id}")
        position[sub.id] = index

    by_id = {sub.id: sub for sub in sub_actions}
    indegree = {sub.id: 0 for sub in sub_actions}
    dependents: Dict[str, List[str]] = {sub.id: [] for sub in sub_actions}

    for sub in sub_actions:
        for dep in dict.fromkeys(sub.depends_on):
            if dep not in by_id:
                raise DependencyError(f"Sub-action {sub.id} depends on unknown sub-action {dep}")
            indegree[sub.id] += 1
            dependents[dep].append(sub.id)

    levels: List[List[SubAction]] = []
    ready = [sub.id for sub in sub_actions if indegree[sub.id] == 0]
    placed = 0
    while ready:
        levels.append([by_id[i] for i in ready])
        placed += len(ready)
        next_ready = []
        for sub_id in ready:
            for dependent in dependents[sub_id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    next_ready.append(dependent)
        ready = sorted(next_ready, key=position.__getitem__)

    if placed != len(sub_actions):
        stuck = [sub.id for sub in sub_actions if indegree[sub.id] > 0]
        raise DependencyError(f"Dependency cycle among sub-actions: {', '.join(stuck)}")
    return levels


def topological_order(sub_actions: Sequence[SubAction]) -> List[SubAction]:
    return [sub for level in order_sub_actions(sub_actions) for sub in level]


def check_main_dependencies(action: ProposedAction) -> None:
    """A main action may only depend on its own sub-actions."""
    known = {sub.id for sub in action.sub_actions}
    for dep in action.depends_on:
        if dep not in known:
            raise DependencyError(f"Action {action.id} depends on unknown sub-action {dep}")
