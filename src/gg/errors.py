"""Exceptions raised by the gg storage, graph and lifecycle layers.

Every error carries a ``code`` so callers can branch on the kind without
matching on messages.  ``NotFound`` errors are disjoint from the structural
refusals (cycle, has-dependents, invalid transition) so an agent can tell a
missing target apart from an operation that needs different arguments.
"""

from __future__ import annotations

NOT_FOUND = "NOT_FOUND"
ALREADY_EXISTS = "ALREADY_EXISTS"
INVALID_FORMAT = "INVALID_FORMAT"
INVALID_TRANSITION = "INVALID_TRANSITION"
CYCLE_DETECTED = "CYCLE_DETECTED"
HAS_DEPENDENTS = "HAS_DEPENDENTS"
STORAGE_BUSY = "STORAGE_BUSY"


class GraphError(Exception):
    """Base class for all gg errors."""

    code = "INTERNAL"


class NotFound(GraphError):
    code = NOT_FOUND
    entity = "entity"

    def __init__(self, identifier: object):
        self.identifier = identifier
        super().__init__(f"{self.entity.title()} '{identifier}' not found.")


class PlanNotFound(NotFound):
    entity = "plan"


class TaskNotFound(NotFound):
    entity = "task"


class DependencyNotFound(NotFound):
    entity = "dependency"

    def __init__(self, task_id: int, blocks_on_id: int):
        self.task_id = task_id
        self.blocks_on_id = blocks_on_id
        super().__init__(f"{task_id} -> {blocks_on_id}")


class AlreadyExists(GraphError):
    code = ALREADY_EXISTS


class DuplicateSlug(AlreadyExists):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Plan '{slug}' already exists.")


class InvalidFormat(GraphError):
    code = INVALID_FORMAT


class InvalidTitle(InvalidFormat):
    pass


class SelfDependency(InvalidFormat):
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} cannot depend on itself.")


class InvalidTransition(GraphError):
    code = INVALID_TRANSITION

    def __init__(self, task_id: int, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id} cannot move from '{current}' to '{target}'.")


class CycleDetected(GraphError):
    """Adding an edge would close a cycle.

    ``path`` lists internal task ids from the would-be dependent through its
    new blocker and back to itself, e.g. ``[1, 2, 3, 1]``.
    """

    code = CYCLE_DETECTED

    def __init__(self, path: list[int], rendered: str | None = None):
        self.path = path
        self.rendered = rendered or " -> ".join(str(task_id) for task_id in path)
        super().__init__(f"Dependency would create a cycle: {self.rendered}")


class HasDependents(GraphError):
    code = HAS_DEPENDENTS

    def __init__(self, task_id: int, dependents: list[int]):
        self.task_id = task_id
        self.dependents = dependents
        super().__init__(
            f"Task {task_id} has {len(dependents)} dependent task(s); "
            "remove those dependencies first."
        )


class StorageBusy(GraphError):
    code = STORAGE_BUSY

    def __init__(self, detail: str = "database is locked"):
        super().__init__(f"Storage busy ({detail}); retry the operation.")
