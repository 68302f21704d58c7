"""Persist the final order a drag-and-drop gesture settled on.

The client sends the order it already shows; the coordinator never computes
drag geometry. Client positions are only used as sort keys, the stored
positions are always rewritten densely by ``bulk_reassign``.
"""

import logging

from board_db import NOW_SQL
from errors import NotFound, ValidationFailed
from tasks import check_id

logger = logging.getLogger(__name__)


def _sorted_ids(entries):
    """Order entries by client position; ties keep their payload order."""
    ranked = sorted(enumerate(entries), key=lambda pair: (pair[1]["position"], pair[0]))
    return [entry["id"] for _, entry in ranked]


def _check_entries(entries, keys):
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValidationFailed("Reorder payload must be a list")
    checked = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationFailed("Each reorder entry must be an object")
        for key in keys:
            if check_id(entry.get(key), key) is None:
                raise ValidationFailed(f"Each reorder entry needs an integer {key}")
        checked.append({key: entry[key] for key in keys})
    return checked


class ReorderCoordinator:
    def __init__(self, db, stages, tasks):
        self.db = db
        self.stages = stages
        self.tasks = tasks

    def reorder_stages(self, project_id, entries):
        """Rewrite a project's stage order from ``[{id, position}, ...]``.

        An empty list is a cancelled gesture and changes nothing.
        """
        entries = _check_entries(entries, ("id", "position"))
        if not entries:
            logger.debug("Empty stage reorder for project %s; nothing to do", project_id)
            return []
        ordered = _sorted_ids(entries)

        with self.db.transaction() as conn:
            self.stages.require_project(conn, project_id)
            marks = ", ".join("?" for _ in ordered)
            rows = conn.execute(
                f"SELECT id, project_id FROM stages WHERE id IN ({marks})", tuple(ordered)
            ).fetchall()
            owners = {r["id"]: r["project_id"] for r in rows}
            for stage_id in ordered:
                if stage_id not in owners:
                    raise NotFound(f"Stage {stage_id} not found")
                if owners[stage_id] != project_id:
                    raise ValidationFailed(
                        f"Stage {stage_id} does not belong to project {project_id}"
                    )
            self.stages.collection.bulk_reassign(conn, {project_id: ordered})
            return self.stages.stages_of(conn, project_id)

    def reorder_tasks(self, entries):
        """Rewrite task order from ``[{id, status_id, position}, ...]`` spanning any stages.

        Entries are grouped per ``status_id``; a task listed under a stage it
        is not in moves there. Stages that lose a task are compacted in the
        same transaction. Returns ``[{status_id, task_ids}, ...]`` for every
        stage that was rewritten.
        """
        entries = _check_entries(entries, ("id", "status_id", "position"))
        if not entries:
            logger.debug("Empty task reorder; nothing to do")
            return []

        groups = {}
        for entry in entries:
            groups.setdefault(entry["status_id"], []).append(entry)
        orders = {status_id: _sorted_ids(group) for status_id, group in groups.items()}
        destination = {entry["id"]: entry["status_id"] for entry in entries}

        with self.db.transaction() as conn:
            stage_projects = {
                status_id: self.stages.require_stage(conn, status_id)["project_id"]
                for status_id in orders
            }
            marks = ", ".join("?" for _ in destination)
            rows = conn.execute(
                f"SELECT id, project_id, status_id, parent_task_id FROM tasks WHERE id IN ({marks})",
                tuple(destination),
            ).fetchall()
            found = {r["id"]: r for r in rows}
            moved = []
            for task_id, status_id in destination.items():
                task = found.get(task_id)
                if task is None:
                    raise NotFound(f"Task {task_id} not found")
                if task["parent_task_id"] is not None:
                    raise ValidationFailed(f"Task {task_id} is a subtask and has no position")
                if task["project_id"] != stage_projects[status_id]:
                    raise ValidationFailed(
                        f"Task {task_id} cannot move to stage {status_id} of another project"
                    )
                if task["status_id"] != status_id:
                    moved.append(task_id)

            final = self.tasks.collection.bulk_reassign(conn, orders)
            if moved:
                marks = ", ".join("?" for _ in moved)
                conn.execute(
                    f"UPDATE tasks SET updated_at = {NOW_SQL} WHERE id IN ({marks})", tuple(moved)
                )
                logger.info("Tasks %s changed stage during reorder", moved)
            return [
                {"status_id": status_id, "task_ids": task_ids}
                for status_id, task_ids in final.items()
            ]
