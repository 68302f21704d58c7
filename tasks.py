"""Tasks and subtasks.

Top-level tasks are ordered 0..N-1 within their stage (``status_id``).
Subtasks hang off a top-level task, store no position, never count toward a
stage's task limit and are listed by creation time. A subtask's
``status_id`` only says whether it is done (pointing at the completed stage)
or not.
"""

import logging
from dataclasses import dataclass
from typing import Any

from board_db import NOW_SQL, row_to_dict
from errors import NotFound, ValidationFailed
from positions import PositionedCollection
from stages import (
    UNSET,
    Patch,
    check_position,
    completed_stage,
    next_stage,
    require_flag,
    require_text,
    resolve_pending_stage,
)

logger = logging.getLogger(__name__)

TASK_FLAGS = ("is_priority",)


@dataclass
class TaskPatch(Patch):
    title: Any = UNSET
    description: Any = UNSET
    is_priority: Any = UNSET


def check_description(value):
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationFailed("description must be text")
    return value


def check_id(value, what):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{what} must be an integer id")
    return value


class TaskStore:
    def __init__(self, db, stages):
        self.db = db
        self.stages = stages
        # subtasks are outside the ordering entirely
        self.collection = PositionedCollection(
            "tasks", "status_id", base=0, scope="parent_task_id IS NULL", label="task"
        )

    # -------------------------
    # Row access
    # -------------------------
    @staticmethod
    def require_task(conn, task_id):
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFound(f"Task {task_id} not found")
        return row_to_dict(row, TASK_FLAGS)

    def _stage_in_project(self, conn, stage_id, project_id):
        stage = self.stages.require_stage(conn, stage_id)
        if stage["project_id"] != project_id:
            raise ValidationFailed(f"Stage {stage_id} does not belong to project {project_id}")
        return stage

    # -------------------------
    # Queries
    # -------------------------
    def get_task(self, task_id):
        with self.db.reader() as conn:
            return self.require_task(conn, task_id)

    def list_project_tasks(self, project_id):
        """Top-level tasks of a project, by stage order, then position within the stage."""
        with self.db.reader() as conn:
            self.stages.require_project(conn, project_id)
            rows = conn.execute(
                """
                SELECT t.*,
                       (SELECT COUNT(*) FROM tasks sub WHERE sub.parent_task_id = t.id) AS subtask_count
                FROM tasks t
                JOIN stages s ON s.id = t.status_id
                WHERE t.project_id = ? AND t.parent_task_id IS NULL
                ORDER BY s.position, t.position, t.id
                """,
                (project_id,),
            ).fetchall()
            return [row_to_dict(r, TASK_FLAGS) for r in rows]

    def list_subtasks(self, task_id):
        with self.db.reader() as conn:
            self.require_task(conn, task_id)
            rows = conn.execute(
                "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at, id",
                (task_id,),
            ).fetchall()
            return [row_to_dict(r, TASK_FLAGS) for r in rows]

    def count_stage_tasks(self, stage_id):
        with self.db.reader() as conn:
            self.stages.require_stage(conn, stage_id)
            return self.collection.count(conn, stage_id)

    # -------------------------
    # Commands
    # -------------------------
    def create_task(
        self,
        project_id,
        title,
        status_id=None,
        description=None,
        is_priority=False,
        parent_task_id=None,
        position=None,
    ):
        """Create a task (or a subtask when ``parent_task_id`` is given).

        Without ``status_id`` the task lands in the project's pending stage.
        Top-level tasks are inserted at ``position`` (clamped), or appended.
        """
        title = require_text(title, "Task title")
        description = check_description(description)
        is_priority = require_flag(is_priority, "is_priority")
        status_id = check_id(status_id, "status_id")
        parent_task_id = check_id(parent_task_id, "parent_task_id")
        position = check_position(position)
        if parent_task_id is not None and position is not None:
            raise ValidationFailed("Subtasks have no position")

        with self.db.transaction() as conn:
            self.stages.require_project(conn, project_id)
            if status_id is None:
                stage = resolve_pending_stage(self.stages.stages_of(conn, project_id))
                if stage is None:
                    raise ValidationFailed(f"Project {project_id} has no stages")
            else:
                stage = self._stage_in_project(conn, status_id, project_id)

            if parent_task_id is not None:
                parent = self.require_task(conn, parent_task_id)
                if parent["project_id"] != project_id:
                    raise ValidationFailed(
                        f"Task {parent_task_id} does not belong to project {project_id}"
                    )
                if parent["parent_task_id"] is not None:
                    raise ValidationFailed("Subtasks cannot have subtasks of their own")
                cur = conn.execute(
                    """
                    INSERT INTO tasks(project_id, status_id, parent_task_id, title,
                                      description, is_priority, position)
                    VALUES (?, ?, ?, ?, ?, ?, NULL)
                    """,
                    (project_id, stage["id"], parent_task_id, title, description, int(is_priority)),
                )
                logger.info("Created subtask %s under task %s", cur.lastrowid, parent_task_id)
                return self.require_task(conn, cur.lastrowid)

            task_id, _ = self.collection.insert_at(conn, stage["id"], position, {
                "project_id": project_id,
                "title": title,
                "description": description,
                "is_priority": int(is_priority),
            })
            return self.require_task(conn, task_id)

    def update_task(self, task_id, patch):
        changes = patch.supplied()
        if not changes:
            raise ValidationFailed("No fields to update")
        if "title" in changes:
            changes["title"] = require_text(changes["title"], "Task title")
        if "description" in changes:
            changes["description"] = check_description(changes["description"])
        if "is_priority" in changes:
            changes["is_priority"] = int(require_flag(changes["is_priority"], "is_priority"))

        with self.db.transaction() as conn:
            self.require_task(conn, task_id)
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE tasks SET {assignments}, updated_at = {NOW_SQL} WHERE id = ?",
                (*changes.values(), task_id),
            )
            return self.require_task(conn, task_id)

    def delete_task(self, task_id):
        """Delete a task with its subtasks; a top-level task's stage closes the gap."""
        with self.db.transaction() as conn:
            task = self.require_task(conn, task_id)
            if task["parent_task_id"] is None:
                self.collection.delete(conn, task["status_id"], task_id)
            else:
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                logger.info("Deleted subtask %s", task_id)

    def _set_status(self, conn, task, stage_id):
        if task["status_id"] == stage_id:
            return task
        if task["parent_task_id"] is None:
            # leave the source stage dense, append at the end of the destination
            self.collection.transfer(conn, task["status_id"], task["id"], stage_id)
        else:
            conn.execute("UPDATE tasks SET status_id = ? WHERE id = ?", (stage_id, task["id"]))
        conn.execute(f"UPDATE tasks SET updated_at = {NOW_SQL} WHERE id = ?", (task["id"],))
        logger.info("Task %s moved from stage %s to %s", task["id"], task["status_id"], stage_id)
        return self.require_task(conn, task["id"])

    def move_status(self, task_id, stage_id):
        stage_id = check_id(stage_id, "status_id")
        if stage_id is None:
            raise ValidationFailed("status_id required")
        with self.db.transaction() as conn:
            task = self.require_task(conn, task_id)
            self._stage_in_project(conn, stage_id, task["project_id"])
            return self._set_status(conn, task, stage_id)

    def advance_task(self, task_id):
        """Move a task to the stage after its current one; a no-op at the last stage."""
        with self.db.transaction() as conn:
            task = self.require_task(conn, task_id)
            stages = self.stages.stages_of(conn, task["project_id"])
            following = next_stage(stages, task["status_id"])
            if following is None:
                return task
            return self._set_status(conn, task, following["id"])

    def toggle_subtask_done(self, task_id):
        """Point a subtask at the completed stage, or back at the pending stage."""
        with self.db.transaction() as conn:
            task = self.require_task(conn, task_id)
            if task["parent_task_id"] is None:
                raise ValidationFailed("Only subtasks can be toggled done; move tasks between stages")
            stages = self.stages.stages_of(conn, task["project_id"])
            done = completed_stage(stages)
            if done is None:
                raise ValidationFailed(f"Project {task['project_id']} has no completed stage")
            if task["status_id"] == done["id"]:
                target = resolve_pending_stage(stages)
            else:
                target = done
            return self._set_status(conn, task, target["id"])
