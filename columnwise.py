#!/usr/bin/env python3
"""Columnwise - kanban board API with dense stage and task ordering."""

import json
import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flask import Flask, g, jsonify, request

from board_db import Database
from errors import BoardError
from reorder import ReorderCoordinator
from stages import ProjectPatch, ProjectStore, StagePatch, StageStore
from tasks import TaskPatch, TaskStore

logger = logging.getLogger("columnwise")

app = Flask(__name__)

DATA_DIR = Path(os.environ.get("COLUMNWISE_DATA_DIR", Path(__file__).parent / "data"))
DB_FILE = DATA_DIR / "columnwise.db"
SETTINGS_FILE = DATA_DIR / "settings.json"
LOG_DIR = DATA_DIR / "logs"

DEFAULT_SETTINGS = {
    "port": 5050,
    "debug": False,
    "log_level": "INFO",
    "busy_timeout": 5.0,
}


def load_settings(apply_env=True):
    """Load settings from JSON file, filling in defaults for missing keys."""
    settings = dict(DEFAULT_SETTINGS)
    if SETTINGS_FILE.exists():
        try:
            settings.update(json.loads(SETTINGS_FILE.read_text()))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", SETTINGS_FILE, exc)
    if apply_env and os.environ.get("COLUMNWISE_LOG_LEVEL"):
        settings["log_level"] = os.environ["COLUMNWISE_LOG_LEVEL"]
    return settings


def save_settings(settings):
    """Save settings to JSON file."""
    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_FILE.write_text(json.dumps(settings, indent=2))


def setup_logging(level_name="INFO"):
    """Log to a rotating file under LOG_DIR and to stdout. Returns the log file path."""
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logfile = LOG_DIR / "columnwise.log"

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                            "%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(level)

    # File: rotate at 5MB, keep 7 backups
    fh = RotatingFileHandler(logfile, maxBytes=5_000_000, backupCount=7, encoding="utf-8")
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    logger.info("Logging initialized at %s; file: %s", logging.getLevelName(level), logfile)
    return logfile


@dataclass
class Board:
    """The stores for one database, wired together."""
    db: Database
    stages: StageStore
    projects: ProjectStore
    tasks: TaskStore
    reorder: ReorderCoordinator


# Database files whose schema has been applied by this process
_schema_ready = set()


def open_board(db_file, busy_timeout=5.0):
    db = Database(db_file, busy_timeout=busy_timeout)
    if db.path not in _schema_ready:
        db.ensure_schema()
        _schema_ready.add(db.path)
    stages = StageStore(db)
    tasks = TaskStore(db, stages)
    return Board(
        db=db,
        stages=stages,
        projects=ProjectStore(db, stages),
        tasks=tasks,
        reorder=ReorderCoordinator(db, stages, tasks),
    )


def get_board():
    """Board for the current request, bound to the current DB_FILE."""
    if "board" not in g:
        g.board = open_board(DB_FILE, load_settings()["busy_timeout"])
    return g.board


def json_body():
    """Request JSON object, or None when the body is missing or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


@app.errorhandler(BoardError)
def board_error(err):
    """Report store failures as structured JSON results."""
    return jsonify(err.to_dict()), err.status


@app.route("/")
def index():
    """Service banner."""
    return jsonify({"name": "columnwise", "status": "running"})


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@app.route("/api/projects")
def list_projects():
    """Get all projects, newest first."""
    return jsonify(get_board().projects.list_projects())


@app.route("/api/projects", methods=["POST"])
def create_project():
    """Create a project seeded with default stages, or with the stages supplied."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    project = get_board().projects.create_project(
        data.get("name"),
        description=data.get("description"),
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        stages=data.get("stages"),
    )
    return jsonify(project), 201


@app.route("/api/projects/<int:project_id>")
def get_project(project_id):
    """Get a project with its stages."""
    return jsonify(get_board().projects.get_project(project_id))


@app.route("/api/projects/<int:project_id>", methods=["PUT"])
def update_project(project_id):
    """Update any of a project's name, description and dates."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400
    project = get_board().projects.update_project(project_id, ProjectPatch.from_payload(data))
    return jsonify(project)


@app.route("/api/projects/<int:project_id>", methods=["DELETE"])
def delete_project(project_id):
    """Delete a project together with its stages and tasks."""
    get_board().projects.delete_project(project_id)
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

@app.route("/api/projects/<int:project_id>/stages")
def list_stages(project_id):
    """Get a project's stages in order, with task counts and limit advisories."""
    return jsonify(get_board().stages.list_stages(project_id))


@app.route("/api/projects/<int:project_id>/stages", methods=["POST"])
def create_stage(project_id):
    """Insert a stage at the requested position (clamped to the valid range)."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    stage = get_board().stages.create_stage(
        project_id,
        data.get("name"),
        position=data.get("position"),
        is_completed=data.get("is_completed", False),
        is_pending=data.get("is_pending", False),
        task_limit=data.get("task_limit"),
        on_conflict=data.get("on_conflict"),
    )
    return jsonify(stage), 201


@app.route("/api/projects/<int:project_id>/stage-order", methods=["PUT"])
def reorder_stages(project_id):
    """Save the whole stage order from the rearrange dialog."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    stages = get_board().reorder.reorder_stages(project_id, data.get("stages"))
    return jsonify({"success": True, "stages": stages})


@app.route("/api/stages/<int:stage_id>")
def get_stage(stage_id):
    """Get a single stage."""
    return jsonify(get_board().stages.get_stage(stage_id))


@app.route("/api/stages/<int:stage_id>", methods=["PUT"])
def update_stage(stage_id):
    """Edit a stage. Only the fields present in the body change."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    stage = get_board().stages.update_stage(
        stage_id, StagePatch.from_payload(data), on_conflict=data.get("on_conflict")
    )
    return jsonify(stage)


@app.route("/api/stages/<int:stage_id>/position", methods=["PUT"])
def move_stage(stage_id):
    """Move one stage to a new position, shifting only the stages in between."""
    data = json_body()
    if data is None or "position" not in data:
        return jsonify({"error": "position required"}), 400
    return jsonify(get_board().stages.move_stage(stage_id, data["position"]))


@app.route("/api/stages/<int:stage_id>", methods=["DELETE"])
def delete_stage(stage_id):
    """Delete a stage and its tasks; later stages move up."""
    get_board().stages.delete_stage(stage_id)
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@app.route("/api/projects/<int:project_id>/tasks")
def list_project_tasks(project_id):
    """Get a project's top-level tasks ordered by stage, then position."""
    return jsonify(get_board().tasks.list_project_tasks(project_id))


@app.route("/api/projects/<int:project_id>/tasks", methods=["POST"])
def create_task(project_id):
    """Create a task, or a subtask when parent_task_id is given."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    task = get_board().tasks.create_task(
        project_id,
        data.get("title"),
        status_id=data.get("status_id"),
        description=data.get("description"),
        is_priority=data.get("is_priority", False),
        parent_task_id=data.get("parent_task_id"),
        position=data.get("position"),
    )
    return jsonify(task), 201


@app.route("/api/task-order", methods=["PUT"])
def reorder_tasks():
    """Save the final order after a task drag, across one or more stages."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    stages = get_board().reorder.reorder_tasks(data.get("tasks"))
    return jsonify({"success": True, "stages": stages})


@app.route("/api/tasks/<int:task_id>")
def get_task(task_id):
    """Get a single task."""
    return jsonify(get_board().tasks.get_task(task_id))


@app.route("/api/tasks/<int:task_id>", methods=["PUT"])
def update_task(task_id):
    """Edit a task's title, description or priority flag."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400
    return jsonify(get_board().tasks.update_task(task_id, TaskPatch.from_payload(data)))


@app.route("/api/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    """Delete a task and its subtasks."""
    get_board().tasks.delete_task(task_id)
    return jsonify({"success": True})


@app.route("/api/tasks/<int:task_id>/status", methods=["PUT"])
def move_task_status(task_id):
    """Move a task to another stage of its project."""
    data = json_body()
    if data is None or "status_id" not in data:
        return jsonify({"error": "status_id required"}), 400
    return jsonify(get_board().tasks.move_status(task_id, data["status_id"]))


@app.route("/api/tasks/<int:task_id>/advance", methods=["POST"])
def advance_task(task_id):
    """Move a task to the next stage."""
    return jsonify(get_board().tasks.advance_task(task_id))


@app.route("/api/tasks/<int:task_id>/toggle-done", methods=["POST"])
def toggle_subtask_done(task_id):
    """Mark a subtask done or not done."""
    return jsonify(get_board().tasks.toggle_subtask_done(task_id))


@app.route("/api/tasks/<int:task_id>/subtasks")
def list_subtasks(task_id):
    """Get a task's subtasks in creation order."""
    return jsonify(get_board().tasks.list_subtasks(task_id))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@app.route("/api/settings", methods=["GET"])
def get_settings():
    """Get current settings."""
    return jsonify(load_settings())


@app.route("/api/settings", methods=["POST"])
def update_settings():
    """Update settings. Unknown keys are ignored; changes apply on next start."""
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400

    settings = load_settings(apply_env=False)
    for key, default in DEFAULT_SETTINGS.items():
        if key not in data:
            continue
        value = data[key]
        if isinstance(default, bool):
            ok = isinstance(value, bool)
        elif isinstance(default, str):
            ok = isinstance(value, str) and bool(value)
        elif isinstance(default, int):
            ok = isinstance(value, int) and not isinstance(value, bool) and value > 0
        else:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
        if not ok:
            return jsonify({"error": f"Invalid value for {key}"}), 400
        settings[key] = value

    save_settings(settings)
    return jsonify({"success": True})


def main():
    settings = load_settings()
    setup_logging(settings["log_level"])
    open_board(DB_FILE, settings["busy_timeout"])
    print(f"Starting Columnwise on http://localhost:{settings['port']}")
    app.run(debug=settings["debug"], port=settings["port"])


if __name__ == "__main__":
    main()
