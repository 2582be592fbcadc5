"""Chapter ordering engine.

Pure functions that compute new (parent_id, order, level) placements for
insert, move and delete operations on one book's chapter forest. No database
access and no logging: the tree store loads the forest into an arena, asks for
a plan, and persists only the placements the plan reports as changed.

Arena model:
- The forest is a flat dict of Node keyed by chapter id (arena + index)
- parent_id is None for roots
- Within every sibling group, order is exactly 0..n-1
- level == parent.level + 1, roots are 0

Every plan function leaves its input arena untouched.
"""

from collections import defaultdict
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from uuid import UUID

from quire.db.models import DeleteStrategy
from quire.errors import ApiErrorCode, CycleError, InvalidRequestError, NotFoundError


@dataclass(frozen=True)
class Node:
    id: UUID
    parent_id: UUID | None
    order: int
    level: int


@dataclass(frozen=True)
class Placement:
    parent_id: UUID | None
    order: int
    level: int


@dataclass
class OrderingPlan:
    """Result of planning one tree operation.

    Attributes:
        updates: New placement for every pre-existing node whose placement changed
        created: Placement for the node being inserted, if any
        deleted: Ids removed from the forest
    """

    updates: dict[UUID, Placement] = field(default_factory=dict)
    created: dict[UUID, Placement] = field(default_factory=dict)
    deleted: frozenset[UUID] = frozenset()

    @property
    def is_noop(self) -> bool:
        return not (self.updates or self.created or self.deleted)


Arena = Mapping[UUID, Node]


# =============================================================================
# Queries
# =============================================================================


def children_index(arena: Arena) -> dict[UUID | None, list[UUID]]:
    """Group node ids by parent, each group sorted by order."""
    groups: dict[UUID | None, list[Node]] = defaultdict(list)
    for node in arena.values():
        groups[node.parent_id].append(node)
    return {
        parent_id: [n.id for n in sorted(nodes, key=lambda n: (n.order, str(n.id)))]
        for parent_id, nodes in groups.items()
    }


def siblings(arena: Arena, parent_id: UUID | None) -> list[UUID]:
    """Ids of the children of parent_id (None for roots), ordered."""
    return children_index(arena).get(parent_id, [])


def ancestors(arena: Arena, node_id: UUID) -> Iterator[UUID]:
    """Yield ancestors of node_id from its parent up to its root.

    Raises CycleError if the stored parent chain loops, which means the
    forest was corrupted outside the engine.
    """
    seen = {node_id}
    parent_id = arena[node_id].parent_id
    while parent_id is not None:
        if parent_id in seen:
            raise CycleError(f"Parent chain of chapter {node_id} loops")
        seen.add(parent_id)
        yield parent_id
        parent_id = arena[parent_id].parent_id


def descendants(arena: Arena, node_id: UUID) -> list[UUID]:
    """All descendants of node_id in pre-order, excluding node_id itself."""
    index = children_index(arena)
    out: list[UUID] = []
    stack = list(reversed(index.get(node_id, [])))
    while stack:
        current = stack.pop()
        out.append(current)
        stack.extend(reversed(index.get(current, [])))
    return out


def preorder(arena: Arena) -> Iterator[UUID]:
    """Lazily walk the forest: roots by order, each followed by its subtree."""
    index = children_index(arena)
    stack = list(reversed(index.get(None, [])))
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(index.get(current, [])))


def would_create_cycle(arena: Arena, node_id: UUID, new_parent_id: UUID | None) -> bool:
    """True if placing node_id under new_parent_id would make it its own ancestor.

    Walks the ancestors of the new parent up to the root looking for node_id.
    """
    if new_parent_id is None:
        return False
    if new_parent_id == node_id:
        return True
    return any(ancestor == node_id for ancestor in ancestors(arena, new_parent_id))


def validate_forest(arena: Arena) -> list[str]:
    """Return a description of every invariant violation (empty when well-formed)."""
    problems: list[str] = []
    for parent_id, ids in children_index(arena).items():
        if parent_id is not None and parent_id not in arena:
            problems.append(f"group {parent_id} has no parent node")
            continue
        orders = [arena[i].order for i in ids]
        if orders != list(range(len(ids))):
            problems.append(f"group {parent_id} has orders {orders}")
        expected_level = 0 if parent_id is None else arena[parent_id].level + 1
        for i in ids:
            if arena[i].level != expected_level:
                problems.append(
                    f"chapter {i} has level {arena[i].level}, expected {expected_level}"
                )
    for node_id in arena:
        try:
            for _ in ancestors(arena, node_id):
                pass
        except CycleError:
            problems.append(f"chapter {node_id} is part of a cycle")
        except KeyError:
            # Dangling parent, already reported per group above.
            pass
    return problems


# =============================================================================
# Planning
# =============================================================================


def _require(arena: Arena, node_id: UUID) -> Node:
    node = arena.get(node_id)
    if node is None:
        raise NotFoundError(ApiErrorCode.E_CHAPTER_NOT_FOUND, f"Chapter {node_id} not found")
    return node


def _level_under(arena: Arena, parent_id: UUID | None) -> int:
    return 0 if parent_id is None else arena[parent_id].level + 1


def _clamp(index: int | None, upper: int) -> int:
    if index is None:
        return upper
    return max(0, min(index, upper))


class _Draft:
    """Mutable working copy of an arena that records what changed."""

    def __init__(self, arena: Arena):
        self.original = arena
        self.nodes: dict[UUID, Node] = dict(arena)
        self.index = children_index(arena)

    def place(self, parent_id: UUID | None, ids: list[UUID]) -> None:
        """Make ids the full ordered child list of parent_id, renumbering 0..n-1."""
        self.index[parent_id] = list(ids)
        for order, node_id in enumerate(ids):
            node = self.nodes[node_id]
            if node.parent_id != parent_id or node.order != order:
                self.nodes[node_id] = replace(node, parent_id=parent_id, order=order)

    def relevel(self, node_id: UUID, level: int) -> None:
        """Set node_id to level and recompute its subtree depth-first."""
        stack = [(node_id, level)]
        while stack:
            current, current_level = stack.pop()
            node = self.nodes[current]
            if node.level != current_level:
                self.nodes[current] = replace(node, level=current_level)
            for child in self.index.get(current, []):
                stack.append((child, current_level + 1))

    def remove(self, ids: set[UUID]) -> None:
        for node_id in ids:
            del self.nodes[node_id]
            self.index.pop(node_id, None)

    def plan(self, deleted: frozenset[UUID] = frozenset()) -> OrderingPlan:
        updates: dict[UUID, Placement] = {}
        created: dict[UUID, Placement] = {}
        for node_id, node in self.nodes.items():
            before = self.original.get(node_id)
            placement = Placement(node.parent_id, node.order, node.level)
            if before is None:
                created[node_id] = placement
            elif before != node:
                updates[node_id] = placement
        return OrderingPlan(updates=updates, created=created, deleted=deleted)


def plan_insert(
    arena: Arena,
    new_id: UUID,
    parent_id: UUID | None,
    index: int | None = None,
) -> OrderingPlan:
    """Place a new node under parent_id.

    Appends as last sibling when index is None; otherwise inserts at index
    (clamped to [0, len]) and shifts following siblings up by one.
    """
    if new_id in arena:
        raise InvalidRequestError(message=f"Chapter {new_id} already exists")
    if parent_id is not None:
        _require(arena, parent_id)

    draft = _Draft(arena)
    draft.nodes[new_id] = Node(new_id, parent_id, -1, _level_under(arena, parent_id))
    group = list(draft.index.get(parent_id, []))
    group.insert(_clamp(index, len(group)), new_id)
    draft.place(parent_id, group)
    return draft.plan()


def plan_move(
    arena: Arena,
    node_id: UUID,
    new_parent_id: UUID | None,
    new_index: int,
) -> OrderingPlan:
    """Move node_id (with its subtree) to position new_index under new_parent_id.

    The node leaves its current sibling group, which closes the gap; it is then
    inserted into the target group at new_index clamped to [0, len] where len
    excludes the node itself. Levels are recomputed for the whole subtree.

    Raises:
        NotFoundError: node_id or new_parent_id is not in the forest
        CycleError: new_parent_id is node_id or one of its descendants
    """
    node = _require(arena, node_id)
    if new_parent_id is not None:
        _require(arena, new_parent_id)
    if would_create_cycle(arena, node_id, new_parent_id):
        raise CycleError(
            f"Cannot move chapter {node_id} under {new_parent_id}: "
            "target is the chapter itself or one of its descendants"
        )

    draft = _Draft(arena)
    old_group = [i for i in draft.index.get(node.parent_id, []) if i != node_id]
    draft.place(node.parent_id, old_group)

    target = [i for i in draft.index.get(new_parent_id, []) if i != node_id]
    target.insert(_clamp(new_index, len(target)), node_id)
    draft.place(new_parent_id, target)

    draft.relevel(node_id, _level_under(arena, new_parent_id))
    return draft.plan()


def plan_delete(arena: Arena, node_id: UUID, strategy: DeleteStrategy) -> OrderingPlan:
    """Remove node_id from the forest.

    cascade: node_id and its whole subtree are removed.
    promote_children: direct children take node_id's former position under its
    parent, keeping their relative order; their subtrees are releveled.
    Either way the remaining siblings are renumbered without gaps.
    """
    node = _require(arena, node_id)
    draft = _Draft(arena)
    group = list(draft.index.get(node.parent_id, []))
    position = group.index(node_id)

    if strategy == DeleteStrategy.cascade:
        removed = {node_id, *descendants(arena, node_id)}
        del group[position]
        draft.remove(removed)
        draft.place(node.parent_id, group)
        return draft.plan(deleted=frozenset(removed))

    if strategy == DeleteStrategy.promote_children:
        children = list(draft.index.get(node_id, []))
        group[position : position + 1] = children
        draft.remove({node_id})
        draft.place(node.parent_id, group)
        for child in children:
            draft.relevel(child, node.level)
        return draft.plan(deleted=frozenset({node_id}))

    raise InvalidRequestError(
        ApiErrorCode.E_INVALID_STRATEGY, f"Unknown delete strategy: {strategy}"
    )


def apply_plan(arena: Arena, plan: OrderingPlan) -> dict[UUID, Node]:
    """Return a new arena with plan applied."""
    nodes = {k: v for k, v in arena.items() if k not in plan.deleted}
    for node_id, placement in {**plan.updates, **plan.created}.items():
        nodes[node_id] = Node(node_id, placement.parent_id, placement.order, placement.level)
    return nodes
