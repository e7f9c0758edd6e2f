"""Task hierarchy aggregation over an in-memory snapshot.

A ``TaskForest`` is built from every task row of one project, loaded with a
single SELECT so that all answers describe one consistent view of the tree.
Rows live in a flat arena keyed by id; the parent -> children relation is a
derived index. Every traversal is an iterative closure that tracks visited
ids, so a corrupted (cyclic) parent chain cannot loop forever.
"""
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import NotFoundError

PATH_SEPARATOR = " > "

TREE_FIELDS = (
    "id", "parent_task_id", "stage_id", "project_id", "task_name", "description",
    "sold_days", "status", "priority", "display_order", "responsible_id",
    "start_date", "due_date", "completed_at", "created_at", "updated_at",
)


@dataclass(frozen=True)
class HierarchyNode:
    id: int
    parent_task_id: Optional[int]
    task_name: str
    level: int
    path: str


def _days(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class TaskForest:
    """Arena of task rows plus a children index"""

    def __init__(self, tasks: Iterable[Any]):
        self._tasks: Dict[int, Any] = {}
        self._children: Dict[int, List[int]] = defaultdict(list)

        for task in tasks:
            self._tasks[task.id] = task

        for task in self._tasks.values():
            if task.parent_task_id is not None:
                self._children[task.parent_task_id].append(task.id)

        for child_ids in self._children.values():
            child_ids.sort(key=self._sort_key)

    def _sort_key(self, task_id: int) -> Tuple[int, int]:
        task = self._tasks[task_id]
        return (task.display_order or 0, task.id)

    def get(self, task_id: int):
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError(f"Task {task_id} not found") from None

    def children(self, task_id: int) -> List[Any]:
        self.get(task_id)
        return [self._tasks[c] for c in self._children.get(task_id, ())]

    def main_tasks(self) -> List[Any]:
        roots = [t.id for t in self._tasks.values() if t.parent_task_id is None]
        roots.sort(key=self._sort_key)
        return [self._tasks[r] for r in roots]

    def ancestors(self, task_id: int) -> List[Any]:
        """Strict ancestors, immediate parent first and root last"""
        task = self.get(task_id)
        result = []
        seen = {task_id}
        parent_id = task.parent_task_id
        while parent_id is not None and parent_id not in seen and parent_id in self._tasks:
            seen.add(parent_id)
            parent = self._tasks[parent_id]
            result.append(parent)
            parent_id = parent.parent_task_id
        return result

    def hierarchy(self, task_id: int) -> List[HierarchyNode]:
        """The task and all its descendants ordered by level, then id"""
        root = self.get(task_id)
        nodes = [HierarchyNode(root.id, root.parent_task_id, root.task_name, 0, root.task_name)]
        seen = {root.id}
        queue = deque([nodes[0]])

        while queue:
            current = queue.popleft()
            for child_id in self._children.get(current.id, ()):
                if child_id in seen:
                    continue
                seen.add(child_id)
                child = self._tasks[child_id]
                node = HierarchyNode(
                    id=child.id,
                    parent_task_id=child.parent_task_id,
                    task_name=child.task_name,
                    level=current.level + 1,
                    path=current.path + PATH_SEPARATOR + child.task_name,
                )
                nodes.append(node)
                queue.append(node)

        nodes.sort(key=lambda n: (n.level, n.id))
        return nodes

    def descendants(self, task_id: int) -> List[HierarchyNode]:
        return self.hierarchy(task_id)[1:]

    def subtree_ids(self, task_id: int) -> Set[int]:
        return {node.id for node in self.hierarchy(task_id)}

    def subtask_count(self, task_id: int) -> int:
        self.get(task_id)
        return len(self._children.get(task_id, ()))

    def total_sold_days(self, task_id: int) -> Decimal:
        return sum(
            (_days(self._tasks[i].sold_days) for i in self.subtree_ids(task_id)),
            Decimal("0"),
        )

    def is_complete_with_subtasks(self, task_id: int) -> bool:
        return all(self._tasks[i].status == "done" for i in self.subtree_ids(task_id))

    def completion_percentage(self, task_id: int) -> Optional[float]:
        """Share of done descendants, or None when the task has none"""
        descendants = self.descendants(task_id)
        if not descendants:
            return None
        done = sum(1 for node in descendants if self._tasks[node.id].status == "done")
        return round(done / len(descendants) * 100, 2)

    def effective_stage_id(self, task_id: int) -> Optional[int]:
        """Stage a task displays under; subtasks take their root's stage"""
        task = self.get(task_id)
        if task.parent_task_id is None:
            return task.stage_id
        chain = self.ancestors(task_id)
        return chain[-1].stage_id if chain else task.stage_id

    def date_range(self, task_id: int, _seen: Optional[Set[int]] = None) -> Tuple[Optional[date], Optional[date]]:
        """Own dates for a leaf; earliest..latest subtask date otherwise"""
        task = self.get(task_id)
        seen = _seen if _seen is not None else set()
        seen.add(task_id)
        child_ids = [c for c in self._children.get(task_id, ()) if c not in seen]
        if not child_ids:
            return task.start_date, task.due_date

        dates = []
        for child_id in child_ids:
            start, end = self.date_range(child_id, seen)
            dates.extend(d for d in (start, end) if d is not None)
        if not dates:
            return None, None
        return min(dates), max(dates)

    def stats(self, task_id: int) -> Dict[str, Any]:
        task = self.get(task_id)
        descendants = self.descendants(task_id)
        return {
            "id": task.id,
            "task_name": task.task_name,
            "project_id": task.project_id,
            "stage_id": task.stage_id,
            "effective_stage_id": self.effective_stage_id(task_id),
            "status": task.status,
            "priority": task.priority,
            "own_sold_days": _days(task.sold_days),
            "total_sold_days": self.total_sold_days(task_id),
            "subtask_count": self.subtask_count(task_id),
            "total_subtasks": len(descendants),
            "completed_subtasks": sum(
                1 for node in descendants if self._tasks[node.id].status == "done"
            ),
            "completion_percentage": self.completion_percentage(task_id),
            "is_complete_with_subtasks": self.is_complete_with_subtasks(task_id),
        }

    def main_task_stats(self) -> List[Dict[str, Any]]:
        roots = sorted(t.id for t in self._tasks.values() if t.parent_task_id is None)
        return [self.stats(task_id) for task_id in roots]

    def tree(self, task_id: int) -> Dict[str, Any]:
        """Nested ``subtasks`` structure in sibling order"""
        root = self.get(task_id)
        seen = {root.id}
        root_node = self._tree_node(root)
        stack = [(root, root_node)]

        while stack:
            task, node = stack.pop()
            for child_id in self._children.get(task.id, ()):
                if child_id in seen:
                    continue
                seen.add(child_id)
                child = self._tasks[child_id]
                child_node = self._tree_node(child)
                node["subtasks"].append(child_node)
                stack.append((child, child_node))

        return root_node

    def _tree_node(self, task) -> Dict[str, Any]:
        node = {field: getattr(task, field, None) for field in TREE_FIELDS}
        start, end = self.date_range(task.id)
        node.update(
            total_sold_days=self.total_sold_days(task.id),
            range_start=start,
            range_end=end,
            subtasks=[],
        )
        return node
