"""Tests for PositionedCollection, the dense ordering engine.

Runs the collection against the real SQLite schema in a temporary file,
using a project's stages (1-based) and a stage's tasks (0-based).
"""

import random
import threading

import pytest

import columnwise
from board_db import Database
from errors import NotFound, StoreFailure, ValidationFailed
from stages import StageStore


@pytest.fixture
def board(tmp_path):
    """Stores bound to a fresh database file."""
    return columnwise.open_board(tmp_path / "board.db")


@pytest.fixture
def project(board):
    """A project with four plain stages A-D at positions 1-4."""
    return board.projects.create_project("Ordering", stages=[
        {"name": "A"}, {"name": "B"}, {"name": "C"}, {"name": "D"},
    ])


def stage_values(name):
    return {"name": name, "is_completed": 0, "is_pending": 0, "task_limit": None}


def positions(board, project_id):
    with board.db.reader() as conn:
        return board.stages.collection.positions(conn, project_id)


def ordered_names(board, project_id):
    return [s["name"] for s in board.stages.list_stages(project_id)]


def assert_dense(pairs, base=1):
    assert [pos for _, pos in pairs] == list(range(base, base + len(pairs)))


class TestInsertAt:
    """insert_at clamps, shifts and places."""

    def test_insert_in_middle_shifts_tail(self, board, project):
        """Inserting at 2 pushes B, C, D down by one."""
        with board.db.transaction() as conn:
            _, pos = board.stages.collection.insert_at(conn, project["id"], 2, stage_values("X"))
        assert pos == 2
        assert ordered_names(board, project["id"]) == ["A", "X", "B", "C", "D"]
        assert_dense(positions(board, project["id"]))

    def test_insert_beyond_end_clamps_to_append(self, board, project):
        """A position past the end lands at count + 1."""
        with board.db.transaction() as conn:
            _, pos = board.stages.collection.insert_at(conn, project["id"], 99, stage_values("X"))
        assert pos == 5
        assert ordered_names(board, project["id"])[-1] == "X"

    def test_insert_below_base_clamps_to_front(self, board, project):
        """Zero and negative positions land at position 1."""
        with board.db.transaction() as conn:
            _, pos = board.stages.collection.insert_at(conn, project["id"], -3, stage_values("X"))
        assert pos == 1
        assert ordered_names(board, project["id"])[0] == "X"

    def test_insert_without_position_appends(self, board, project):
        with board.db.transaction() as conn:
            _, pos = board.stages.collection.insert_at(conn, project["id"], None, stage_values("X"))
        assert pos == 5

    def test_insert_into_empty_parent(self, board):
        """First record of a parent takes the base position."""
        other = board.projects.create_project("Other", stages=[{"name": "Only"}])
        with board.db.transaction() as conn:
            conn.execute("DELETE FROM stages WHERE project_id = ?", (other["id"],))
            _, pos = board.stages.collection.insert_at(conn, other["id"], 7, stage_values("X"))
        assert pos == 1

    def test_failed_insert_rolls_back_the_shift(self, board, project):
        """If the placement write fails, the range shift is undone as well."""
        before = positions(board, project["id"])
        with pytest.raises(StoreFailure):
            with board.db.transaction() as conn:
                board.stages.collection.insert_at(
                    conn, project["id"], 1, {"no_such_column": "boom"}
                )
        assert positions(board, project["id"]) == before


class TestMove:
    """move uses the shift-range algorithm."""

    def test_move_forward(self, board, project):
        a = board.stages.list_stages(project["id"])[0]
        with board.db.transaction() as conn:
            pos = board.stages.collection.move(conn, project["id"], a["id"], 3)
        assert pos == 3
        assert ordered_names(board, project["id"]) == ["B", "C", "A", "D"]
        assert_dense(positions(board, project["id"]))

    def test_move_backward(self, board, project):
        d = board.stages.list_stages(project["id"])[3]
        with board.db.transaction() as conn:
            board.stages.collection.move(conn, project["id"], d["id"], 2)
        assert ordered_names(board, project["id"]) == ["A", "D", "B", "C"]
        assert_dense(positions(board, project["id"]))

    def test_move_clamps_to_max(self, board, project):
        a = board.stages.list_stages(project["id"])[0]
        with board.db.transaction() as conn:
            pos = board.stages.collection.move(conn, project["id"], a["id"], 40)
        assert pos == 4
        assert ordered_names(board, project["id"]) == ["B", "C", "D", "A"]

    def test_move_to_same_position_is_noop(self, board, project):
        b = board.stages.list_stages(project["id"])[1]
        before = positions(board, project["id"])
        with board.db.transaction() as conn:
            pos = board.stages.collection.move(conn, project["id"], b["id"], 2)
        assert pos == 2
        assert positions(board, project["id"]) == before

    def test_move_only_touches_the_range(self, board, project):
        """Moving B to 3 leaves A and D untouched."""
        stages = board.stages.list_stages(project["id"])
        with board.db.transaction() as conn:
            board.stages.collection.move(conn, project["id"], stages[1]["id"], 3)
        after = dict(positions(board, project["id"]))
        assert after[stages[0]["id"]] == 1
        assert after[stages[3]["id"]] == 4

    def test_move_there_and_back_restores_order(self, board, project):
        before = positions(board, project["id"])
        c = board.stages.list_stages(project["id"])[2]
        with board.db.transaction() as conn:
            board.stages.collection.move(conn, project["id"], c["id"], 1)
        with board.db.transaction() as conn:
            board.stages.collection.move(conn, project["id"], c["id"], 3)
        assert positions(board, project["id"]) == before

    def test_move_unknown_record(self, board, project):
        with pytest.raises(NotFound):
            with board.db.transaction() as conn:
                board.stages.collection.move(conn, project["id"], 9999, 1)


class TestDelete:
    """delete removes the record then closes the gap."""

    def test_delete_closes_gap(self, board, project):
        b = board.stages.list_stages(project["id"])[1]
        with board.db.transaction() as conn:
            board.stages.collection.delete(conn, project["id"], b["id"])
        assert ordered_names(board, project["id"]) == ["A", "C", "D"]
        assert_dense(positions(board, project["id"]))

    def test_insert_then_delete_restores_order(self, board, project):
        before = positions(board, project["id"])
        with board.db.transaction() as conn:
            new_id, _ = board.stages.collection.insert_at(conn, project["id"], 2, stage_values("X"))
        with board.db.transaction() as conn:
            board.stages.collection.delete(conn, project["id"], new_id)
        assert positions(board, project["id"]) == before

    def test_delete_unknown_record(self, board, project):
        with pytest.raises(NotFound):
            with board.db.transaction() as conn:
                board.stages.collection.delete(conn, project["id"], 9999)


class TestRandomSequences:
    """Positions stay {1..N} after any mix of insert, move and delete."""

    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    def test_dense_after_every_operation(self, board, project, seed):
        rng = random.Random(seed)
        collection = board.stages.collection
        model = [s["id"] for s in board.stages.list_stages(project["id"])]

        for step in range(60):
            op = rng.choice(["insert", "move", "delete"] if model else ["insert"])
            with board.db.transaction() as conn:
                if op == "insert":
                    wanted = rng.randint(-1, len(model) + 3)
                    new_id, pos = collection.insert_at(
                        conn, project["id"], wanted, stage_values(f"S{step}")
                    )
                    assert pos == max(1, min(wanted, len(model) + 1))
                    model.insert(pos - 1, new_id)
                elif op == "move":
                    record_id = rng.choice(model)
                    pos = collection.move(conn, project["id"], record_id, rng.randint(-1, len(model) + 3))
                    model.remove(record_id)
                    model.insert(pos - 1, record_id)
                else:
                    record_id = rng.choice(model)
                    collection.delete(conn, project["id"], record_id)
                    model.remove(record_id)

            pairs = positions(board, project["id"])
            assert_dense(pairs)
            assert [record_id for record_id, _ in pairs] == model


class TestBulkReassign:
    """bulk_reassign overwrites positions from a final order."""

    def test_full_reorder(self, board, project):
        ids = [s["id"] for s in board.stages.list_stages(project["id"])]
        with board.db.transaction() as conn:
            board.stages.collection.bulk_reassign(conn, {project["id"]: list(reversed(ids))})
        assert ordered_names(board, project["id"]) == ["D", "C", "B", "A"]
        assert_dense(positions(board, project["id"]))

    def test_empty_mapping_is_noop(self, board, project):
        before = positions(board, project["id"])
        with board.db.transaction() as conn:
            assert board.stages.collection.bulk_reassign(conn, {}) == {}
        assert positions(board, project["id"]) == before

    def test_partial_list_keeps_uncovered_records_after(self, board, project):
        """Unlisted records follow the listed ones without colliding."""
        a, b, c, d = [s["id"] for s in board.stages.list_stages(project["id"])]
        with board.db.transaction() as conn:
            final = board.stages.collection.bulk_reassign(conn, {project["id"]: [c, a]})
        assert final[project["id"]] == [c, a, b, d]
        assert ordered_names(board, project["id"]) == ["C", "A", "B", "D"]
        assert_dense(positions(board, project["id"]))

    def test_duplicate_id_rejected(self, board, project):
        a = board.stages.list_stages(project["id"])[0]["id"]
        with pytest.raises(ValidationFailed):
            with board.db.transaction() as conn:
                board.stages.collection.bulk_reassign(conn, {project["id"]: [a, a]})

    def test_unknown_id_rejected_without_writes(self, board, project):
        before = positions(board, project["id"])
        a = board.stages.list_stages(project["id"])[0]["id"]
        with pytest.raises(NotFound):
            with board.db.transaction() as conn:
                board.stages.collection.bulk_reassign(conn, {project["id"]: [9999, a]})
        assert positions(board, project["id"]) == before

    def test_compact_repairs_gaps(self, board, project):
        with board.db.transaction() as conn:
            conn.execute("UPDATE stages SET position = position * 10 WHERE project_id = ?",
                         (project["id"],))
        with board.db.transaction() as conn:
            board.stages.collection.compact(conn, project["id"])
        assert ordered_names(board, project["id"]) == ["A", "B", "C", "D"]
        assert_dense(positions(board, project["id"]))

    def test_source_parent_is_compacted(self, board):
        """A stage that only loses a task closes the gap it leaves."""
        project = board.projects.create_project("Tasks")
        x, y, _ = [s["id"] for s in project["stages"]]
        a, b, c = [board.tasks.create_task(project["id"], t, status_id=x)["id"] for t in "ABC"]
        d = board.tasks.create_task(project["id"], "D", status_id=y)["id"]

        with board.db.transaction() as conn:
            final = board.tasks.collection.bulk_reassign(conn, {y: [b, d]})
        assert final == {y: [b, d], x: [a, c]}
        with board.db.reader() as conn:
            assert board.tasks.collection.positions(conn, x) == [(a, 0), (c, 1)]
            assert board.tasks.collection.positions(conn, y) == [(b, 0), (d, 1)]


class TestConcurrentWriters:
    """Writers on separate connections queue on the write lock."""

    def writer(self, db_file, project_id, seed, results, rounds=15):
        rng = random.Random(seed)
        db = Database(db_file, busy_timeout=30.0)
        collection = StageStore(db).collection
        mine = []
        for step in range(rounds):
            op = rng.choice(["insert", "move", "delete"] if mine else ["insert"])
            try:
                with db.transaction() as conn:
                    if op == "insert":
                        wanted = rng.randint(0, collection.count(conn, project_id) + 2)
                        new_id, _ = collection.insert_at(
                            conn, project_id, wanted, stage_values(f"T{seed}-{step}")
                        )
                    elif op == "move":
                        collection.move(conn, project_id, rng.choice(mine), rng.randint(1, 10))
                    else:
                        collection.delete(conn, project_id, mine[-1])
            except StoreFailure:
                results["failures"].append(seed)
                continue
            if op == "insert":
                mine.append(new_id)
            elif op == "delete":
                mine.pop()
        results["inserted"].extend(mine)

    def test_positions_stay_dense(self, board, project):
        before = [record_id for record_id, _ in positions(board, project["id"])]
        results = {"inserted": [], "failures": []}
        workers = [
            threading.Thread(target=self.writer, args=(board.db.path, project["id"], seed, results))
            for seed in range(6)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        pairs = positions(board, project["id"])
        assert_dense(pairs)
        assert results["failures"] == []
        assert sorted(record_id for record_id, _ in pairs) == sorted(before + results["inserted"])

    def test_busy_timeout_is_store_failure_and_writes_nothing(self, board, project):
        """A writer that cannot get the lock in time changes nothing."""
        before = positions(board, project["id"])
        other = Database(board.db.path, busy_timeout=0.05)
        with board.db.transaction():
            with pytest.raises(StoreFailure):
                with other.transaction() as conn:
                    StageStore(other).collection.insert_at(conn, project["id"], 1, stage_values("X"))
        assert positions(board, project["id"]) == before
