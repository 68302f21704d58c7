"""Dense integer ordering of records that share a parent.

A ``PositionedCollection`` keeps the ``position`` column of one table dense
(``base, base + 1, ...`` with no gaps or duplicates) within each parent id.
Stages are ordered within a project, top-level tasks within a stage.

Every method takes a connection that is already inside
``Database.transaction()``; the shift and the placement of one operation
must commit together or not at all.
"""

import logging

from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)


def clamp(value, low, high):
    return max(low, min(int(value), high))


class PositionedCollection:
    def __init__(self, table, parent_column, *, base=1, scope=None, label="record"):
        self.table = table
        self.parent_column = parent_column
        self.base = base
        self.label = label
        # extra predicate limiting which rows take part in the ordering
        self._scope = f" AND {scope}" if scope else ""

    def _members(self):
        return f"{self.parent_column} = ?{self._scope}"

    # -------------------------
    # Reads
    # -------------------------
    def count(self, conn, parent):
        row = conn.execute(
            f"SELECT COUNT(*) FROM {self.table} WHERE {self._members()}", (parent,)
        ).fetchone()
        return int(row[0])

    def positions(self, conn, parent):
        rows = conn.execute(
            f"SELECT id, position FROM {self.table} WHERE {self._members()} "
            "ORDER BY position, id",
            (parent,),
        ).fetchall()
        return [(r["id"], r["position"]) for r in rows]

    def ordered_ids(self, conn, parent):
        return [record_id for record_id, _ in self.positions(conn, parent)]

    def position_of(self, conn, parent, record_id):
        row = conn.execute(
            f"SELECT position FROM {self.table} WHERE id = ? AND {self._members()}",
            (record_id, parent),
        ).fetchone()
        if row is None:
            raise NotFound(f"{self.label.capitalize()} {record_id} not found")
        return row["position"]

    # -------------------------
    # Single-record operations
    # -------------------------
    def insert_at(self, conn, parent, desired_position, values):
        """Insert a record at ``desired_position`` and return ``(id, position)``.

        Out-of-range positions clamp to ``[base, base + count]``; ``None``
        appends. Members at or after the target shift up by one first.
        """
        end = self.base + self.count(conn, parent)
        target = end if desired_position is None else clamp(desired_position, self.base, end)

        conn.execute(
            f"UPDATE {self.table} SET position = position + 1 "
            f"WHERE {self._members()} AND position >= ?",
            (parent, target),
        )
        columns = [self.parent_column, "position", *values.keys()]
        cur = conn.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            (parent, target, *values.values()),
        )
        logger.info(
            "Inserted %s %s into %s %s at position %s (requested %s)",
            self.label, cur.lastrowid, self.parent_column, parent, target, desired_position,
        )
        return cur.lastrowid, target

    def move(self, conn, parent, record_id, new_position):
        """Shift-range move: only the members between old and new position are rewritten."""
        old = self.position_of(conn, parent, record_id)
        top = conn.execute(
            f"SELECT MAX(position) FROM {self.table} WHERE {self._members()}", (parent,)
        ).fetchone()[0]
        target = clamp(new_position, self.base, top)
        if target == old:
            return old

        if target > old:
            conn.execute(
                f"UPDATE {self.table} SET position = position - 1 "
                f"WHERE {self._members()} AND position > ? AND position <= ?",
                (parent, old, target),
            )
        else:
            conn.execute(
                f"UPDATE {self.table} SET position = position + 1 "
                f"WHERE {self._members()} AND position >= ? AND position < ?",
                (parent, target, old),
            )
        conn.execute(f"UPDATE {self.table} SET position = ? WHERE id = ?", (target, record_id))
        logger.info("Moved %s %s from position %s to %s", self.label, record_id, old, target)
        return target

    def delete(self, conn, parent, record_id):
        """Delete first, then close the gap the record leaves behind."""
        old = self.position_of(conn, parent, record_id)
        conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))
        self._close_gap(conn, parent, old)
        logger.info("Deleted %s %s from position %s", self.label, record_id, old)

    def transfer(self, conn, parent, record_id, new_parent):
        """Move a record to the end of another parent and close the gap in the old one."""
        old = self.position_of(conn, parent, record_id)
        target = self.base + self.count(conn, new_parent)
        conn.execute(
            f"UPDATE {self.table} SET {self.parent_column} = ?, position = ? WHERE id = ?",
            (new_parent, target, record_id),
        )
        self._close_gap(conn, parent, old)
        logger.info(
            "Transferred %s %s from %s %s to %s %s at position %s",
            self.label, record_id, self.parent_column, parent,
            self.parent_column, new_parent, target,
        )
        return target

    def _close_gap(self, conn, parent, position):
        conn.execute(
            f"UPDATE {self.table} SET position = position - 1 "
            f"WHERE {self._members()} AND position > ?",
            (parent, position),
        )

    # -------------------------
    # Whole-parent operations
    # -------------------------
    def bulk_reassign(self, conn, orders):
        """Overwrite positions from caller-supplied final orders, one list per parent.

        Listed ids take ``base + index`` in their list's parent (which may move
        them to that parent). Members of an affected parent that no list
        mentions keep their relative order after the listed ones, and parents
        that lost a member are compacted. Returns the final order per parent.
        """
        claimed = {}
        for parent, ids in orders.items():
            for record_id in ids:
                if record_id in claimed:
                    raise ValidationFailed(
                        f"{self.label.capitalize()} {record_id} appears more than once"
                    )
                claimed[record_id] = parent
        if not orders:
            return {}

        sources = []
        if claimed:
            marks = ", ".join("?" for _ in claimed)
            rows = conn.execute(
                f"SELECT id, {self.parent_column} AS parent FROM {self.table} "
                f"WHERE id IN ({marks}){self._scope}",
                tuple(claimed),
            ).fetchall()
            found = {r["id"]: r["parent"] for r in rows}
            missing = [record_id for record_id in claimed if record_id not in found]
            if missing:
                raise NotFound(f"{self.label.capitalize()} {missing[0]} not found")
            for source in found.values():
                if source not in orders and source not in sources:
                    sources.append(source)

        # Snapshot the listed parents before the first write
        final = {}
        for parent, ids in orders.items():
            current = self.ordered_ids(conn, parent)
            final[parent] = list(ids) + [rid for rid in current if rid not in claimed]

        conn.executemany(
            f"UPDATE {self.table} SET {self.parent_column} = ?, position = ? WHERE id = ?",
            [
                (parent, self.base + index, record_id)
                for parent, ids in final.items()
                for index, record_id in enumerate(ids)
            ],
        )
        # Parents that only lost members keep their order, minus the gaps
        for source in sources:
            final[source] = self.compact(conn, source)
        logger.info(
            "Reassigned %d %s positions across %d %s value(s)",
            sum(len(ids) for ids in final.values()), self.label,
            len(final), self.parent_column,
        )
        return final

    def compact(self, conn, parent):
        """Rewrite a parent's positions to ``base..`` keeping the current order."""
        ids = self.ordered_ids(conn, parent)
        conn.executemany(
            f"UPDATE {self.table} SET position = ? WHERE id = ?",
            [(self.base + index, record_id) for index, record_id in enumerate(ids)],
        )
        return ids
