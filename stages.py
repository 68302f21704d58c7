"""Projects and their workflow stages.

Stages are ordered 1..N within a project through ``PositionedCollection``.
At most one stage per project carries ``is_completed``; a write that would
give the flag to a second stage stops with ``CompletedStageConflict`` until
the caller chooses ``on_conflict="replace"`` (take the flag from the current
holder) or ``on_conflict="keep"`` (write without the flag).
"""

import logging
from dataclasses import dataclass, fields
from datetime import date
from typing import Any

from board_db import row_to_dict
from errors import CompletedStageConflict, NotFound, ValidationFailed
from positions import PositionedCollection

logger = logging.getLogger(__name__)

STAGE_FLAGS = ("is_completed", "is_pending")
CONFLICT_RESOLUTIONS = ("replace", "keep")

# Seeded into every project created without an explicit stage list
DEFAULT_STAGES = (
    {"name": "Pending", "is_pending": True},
    {"name": "In Progress"},
    {"name": "Completed", "is_completed": True},
)


class _Unset:
    """Marks a patch field the caller did not supply."""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


class Patch:
    """Partial update: only fields that are not ``UNSET`` are written.

    ``None`` is a real value here (it clears the column), so "not supplied"
    and "explicitly cleared" stay distinguishable.
    """

    @classmethod
    def from_payload(cls, data):
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in names})

    def supplied(self):
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }


@dataclass
class StagePatch(Patch):
    name: Any = UNSET
    is_completed: Any = UNSET
    is_pending: Any = UNSET
    task_limit: Any = UNSET


@dataclass
class ProjectPatch(Patch):
    name: Any = UNSET
    description: Any = UNSET
    start_date: Any = UNSET
    end_date: Any = UNSET


# -------------------------
# Validation helpers
# -------------------------
def require_text(value, what):
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed(f"{what} required")
    return value.strip()


def require_flag(value, what):
    if not isinstance(value, bool):
        raise ValidationFailed(f"{what} must be true or false")
    return value


def check_position(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed("position must be an integer")
    return value


def check_task_limit(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationFailed("task_limit must be a positive integer or null")
    return value


def check_date(value, what):
    if value is None:
        return None
    try:
        return date.fromisoformat(value).isoformat()
    except (TypeError, ValueError):
        raise ValidationFailed(f"{what} must be an ISO date (YYYY-MM-DD)") from None


def check_text_or_none(value, what):
    if value is not None and not isinstance(value, str):
        raise ValidationFailed(f"{what} must be text")
    return value


def check_resolution(on_conflict):
    if on_conflict is not None and on_conflict not in CONFLICT_RESOLUTIONS:
        raise ValidationFailed(f"on_conflict must be one of {', '.join(CONFLICT_RESOLUTIONS)}")
    return on_conflict


def normalize_stage_list(stages):
    """Validate a caller-supplied stage list as a whole before any of it is written."""
    if not isinstance(stages, list) or not stages:
        raise ValidationFailed("stages must be a non-empty list")
    entries = []
    for entry in stages:
        if not isinstance(entry, dict):
            raise ValidationFailed("each stage must be an object")
        entries.append({
            "name": require_text(entry.get("name"), "Stage name"),
            "is_completed": require_flag(entry.get("is_completed", False), "is_completed"),
            "is_pending": require_flag(entry.get("is_pending", False), "is_pending"),
            "task_limit": check_task_limit(entry.get("task_limit")),
        })
    if sum(1 for entry in entries if entry["is_completed"]) > 1:
        raise ValidationFailed("At most one stage per project can be the completed stage")
    return entries


# -------------------------
# Stage list helpers
# -------------------------
def _by_position(stages):
    return sorted(stages, key=lambda s: (s["position"], s["id"]))


def resolve_pending_stage(stages):
    """Pick the stage new tasks land in.

    Fallback order: the first stage flagged ``is_pending``, then the first
    stage that is not the completed stage, then the first stage. ``None``
    only for a project with no stages.
    """
    ordered = _by_position(stages)
    for stage in ordered:
        if stage["is_pending"]:
            return stage
    for stage in ordered:
        if not stage["is_completed"]:
            return stage
    return ordered[0] if ordered else None


def next_stage(stages, stage_id):
    """Return the stage right after ``stage_id`` by position, or None at the end."""
    ordered = _by_position(stages)
    for index, stage in enumerate(ordered):
        if stage["id"] == stage_id:
            return ordered[index + 1] if index + 1 < len(ordered) else None
    raise NotFound(f"Stage {stage_id} not found")


def completed_stage(stages):
    for stage in stages:
        if stage["is_completed"]:
            return stage
    return None


class StageStore:
    def __init__(self, db):
        self.db = db
        self.collection = PositionedCollection("stages", "project_id", base=1, label="stage")

    # -------------------------
    # Row access
    # -------------------------
    @staticmethod
    def require_project(conn, project_id):
        row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            raise NotFound(f"Project {project_id} not found")
        return row

    @staticmethod
    def require_stage(conn, stage_id):
        row = conn.execute("SELECT * FROM stages WHERE id = ?", (stage_id,)).fetchone()
        if row is None:
            raise NotFound(f"Stage {stage_id} not found")
        return row_to_dict(row, STAGE_FLAGS)

    @staticmethod
    def stages_of(conn, project_id):
        rows = conn.execute(
            """
            SELECT s.*,
                   (SELECT COUNT(*) FROM tasks t
                     WHERE t.status_id = s.id AND t.parent_task_id IS NULL) AS task_count
            FROM stages s
            WHERE s.project_id = ?
            ORDER BY s.position, s.id
            """,
            (project_id,),
        ).fetchall()
        stages = []
        for row in rows:
            stage = row_to_dict(row, STAGE_FLAGS)
            # advisory only; nothing stops a stage from exceeding its limit
            stage["over_limit"] = (
                stage["task_limit"] is not None and stage["task_count"] > stage["task_limit"]
            )
            stages.append(stage)
        return stages

    # -------------------------
    # Queries
    # -------------------------
    def list_stages(self, project_id):
        with self.db.reader() as conn:
            self.require_project(conn, project_id)
            return self.stages_of(conn, project_id)

    def get_stage(self, stage_id):
        with self.db.reader() as conn:
            return self.require_stage(conn, stage_id)

    # -------------------------
    # Completed-stage uniqueness
    # -------------------------
    def _settle_completed(self, conn, project_id, stage_id, on_conflict):
        """Return the is_completed value to write for a stage that asks for the flag."""
        holder = conn.execute(
            "SELECT * FROM stages WHERE project_id = ? AND is_completed = 1 AND id IS NOT ?",
            (project_id, stage_id),
        ).fetchone()
        if holder is None:
            return True
        if on_conflict == "replace":
            conn.execute("UPDATE stages SET is_completed = 0 WHERE id = ?", (holder["id"],))
            logger.info("Stage %s gives up the completed flag (replace)", holder["id"])
            return True
        if on_conflict == "keep":
            logger.info("Completed flag stays on stage %s (keep)", holder["id"])
            return False
        logger.warning(
            "Completed stage conflict in project %s: stage %s already holds the flag",
            project_id, holder["id"],
        )
        raise CompletedStageConflict(row_to_dict(holder, STAGE_FLAGS))

    # -------------------------
    # Commands
    # -------------------------
    def seed(self, conn, project_id, entries):
        """Append an already validated stage list to a project, in order."""
        for entry in entries:
            self.collection.insert_at(conn, project_id, None, {
                "name": entry["name"],
                "is_completed": int(entry.get("is_completed", False)),
                "is_pending": int(entry.get("is_pending", False)),
                "task_limit": entry.get("task_limit"),
            })

    def create_stage(
        self,
        project_id,
        name,
        position=None,
        is_completed=False,
        is_pending=False,
        task_limit=None,
        on_conflict=None,
    ):
        """Insert a stage at ``position`` (clamped) and return it with its assigned position."""
        name = require_text(name, "Stage name")
        position = check_position(position)
        is_completed = require_flag(is_completed, "is_completed")
        is_pending = require_flag(is_pending, "is_pending")
        task_limit = check_task_limit(task_limit)
        check_resolution(on_conflict)

        with self.db.transaction() as conn:
            self.require_project(conn, project_id)
            if is_completed:
                is_completed = self._settle_completed(conn, project_id, None, on_conflict)
            stage_id, _ = self.collection.insert_at(conn, project_id, position, {
                "name": name,
                "is_completed": int(is_completed),
                "is_pending": int(is_pending),
                "task_limit": task_limit,
            })
            return self.require_stage(conn, stage_id)

    def update_stage(self, stage_id, patch, on_conflict=None):
        changes = patch.supplied()
        if not changes:
            raise ValidationFailed("No fields to update")
        if "name" in changes:
            changes["name"] = require_text(changes["name"], "Stage name")
        for flag in STAGE_FLAGS:
            if flag in changes:
                changes[flag] = require_flag(changes[flag], flag)
        if "task_limit" in changes:
            changes["task_limit"] = check_task_limit(changes["task_limit"])
        check_resolution(on_conflict)

        with self.db.transaction() as conn:
            stage = self.require_stage(conn, stage_id)
            if changes.get("is_completed"):
                changes["is_completed"] = self._settle_completed(
                    conn, stage["project_id"], stage_id, on_conflict
                )
            values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(f"UPDATE stages SET {assignments} WHERE id = ?", (*values, stage_id))
            logger.info("Updated stage %s: %s", stage_id, ", ".join(changes))
            return self.require_stage(conn, stage_id)

    def move_stage(self, stage_id, position):
        position = check_position(position)
        if position is None:
            raise ValidationFailed("position required")
        with self.db.transaction() as conn:
            stage = self.require_stage(conn, stage_id)
            self.collection.move(conn, stage["project_id"], stage_id, position)
            return self.require_stage(conn, stage_id)

    def delete_stage(self, stage_id):
        """Delete a stage, its tasks with it, and close the gap in the project order.

        Subtasks only use ``status_id`` for done/not done, so a subtask whose
        parent lives in another stage is moved to the pending stage instead
        of being deleted with this one.
        """
        with self.db.transaction() as conn:
            stage = self.require_stage(conn, stage_id)
            remaining = [s for s in self.stages_of(conn, stage["project_id"]) if s["id"] != stage_id]
            fallback = resolve_pending_stage(remaining)
            if fallback is not None:
                cur = conn.execute(
                    """
                    UPDATE tasks SET status_id = ?
                    WHERE status_id = ? AND parent_task_id IS NOT NULL
                      AND parent_task_id NOT IN (SELECT id FROM tasks WHERE status_id = ?)
                    """,
                    (fallback["id"], stage_id, stage_id),
                )
                if cur.rowcount:
                    logger.info(
                        "Moved %d subtask(s) from stage %s to stage %s before delete",
                        cur.rowcount, stage_id, fallback["id"],
                    )
            self.collection.delete(conn, stage["project_id"], stage_id)


class ProjectStore:
    def __init__(self, db, stages):
        self.db = db
        self.stages = stages

    def _project(self, conn, project_id):
        project = dict(self.stages.require_project(conn, project_id))
        project["stages"] = self.stages.stages_of(conn, project_id)
        return project

    def list_projects(self):
        with self.db.reader() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at DESC, id DESC").fetchall()
            return [dict(r) for r in rows]

    def get_project(self, project_id):
        with self.db.reader() as conn:
            return self._project(conn, project_id)

    def create_project(self, name, description=None, start_date=None, end_date=None, stages=None):
        """Create a project with the default three stages, or with ``stages`` as given."""
        name = require_text(name, "Project name")
        description = check_text_or_none(description, "description")
        start_date = check_date(start_date, "start_date")
        end_date = check_date(end_date, "end_date")
        if start_date and end_date and end_date < start_date:
            raise ValidationFailed("end_date cannot be before start_date")
        entries = DEFAULT_STAGES if stages is None else normalize_stage_list(stages)

        with self.db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO projects(name, description, start_date, end_date) VALUES (?, ?, ?, ?)",
                (name, description, start_date, end_date),
            )
            project_id = cur.lastrowid
            self.stages.seed(conn, project_id, entries)
            logger.info("Created project %s with %d stage(s)", project_id, len(entries))
            return self._project(conn, project_id)

    def update_project(self, project_id, patch):
        changes = patch.supplied()
        if not changes:
            raise ValidationFailed("No fields to update")
        if "name" in changes:
            changes["name"] = require_text(changes["name"], "Project name")
        if "description" in changes:
            changes["description"] = check_text_or_none(changes["description"], "description")
        for column in ("start_date", "end_date"):
            if column in changes:
                changes[column] = check_date(changes[column], column)

        with self.db.transaction() as conn:
            current = self.stages.require_project(conn, project_id)
            start = changes.get("start_date", current["start_date"])
            end = changes.get("end_date", current["end_date"])
            if start and end and end < start:
                raise ValidationFailed("end_date cannot be before start_date")
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE projects SET {assignments} WHERE id = ?",
                (*changes.values(), project_id),
            )
            return self._project(conn, project_id)

    def delete_project(self, project_id):
        with self.db.transaction() as conn:
            self.stages.require_project(conn, project_id)
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            logger.info("Deleted project %s", project_id)
