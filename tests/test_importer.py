"""
Tests for the snapshot importer.

Uses Python's unittest module.
The target connection is a mock; tests inspect the SQL it receives.
"""

from __future__ import annotations

import unittest
from datetime import datetime
from unittest.mock import MagicMock

import mysql.connector

from issuevault.migration.importer import (
    INSERT_DEPENDENCY_SQL,
    INSERT_LABEL_SQL,
    UPSERT_ISSUE_SQL,
    import_snapshot,
    issue_params,
)
from issuevault.storage.models import Comment, Dependency, Event, Record, Snapshot
from issuevault.storage.target_store import (
    ISSUE_TABLE_COLUMNS,
    TargetConfig,
    TargetStore,
    TargetStoreError,
)


def _snapshot(records: list[Record] | None = None) -> Snapshot:
    records = records or [
        Record.from_row({"id": "web-1", "title": "First", "created_at": "2024-01-01T10:00:00Z"}),
        Record.from_row({"id": "web-2", "title": "Second", "pinned": 1}),
    ]
    return Snapshot.build(
        records,
        [("web-1", "ui"), ("web-1", "bug")],
        [Dependency.from_row({"issue_id": "web-2", "depends_on_id": "web-1", "type": "blocks"})],
        [Event.from_row({"issue_id": "web-1", "event_type": "created", "actor": "ann"})],
        [Comment.from_row({"issue_id": "web-2", "author": "bo", "text": "hello"})],
        {"issue_prefix": "web"},
    )


class ImporterTestCase(unittest.TestCase):

    def setUp(self) -> None:
        self.cursor = MagicMock()
        self.cursor.with_rows = False
        self.cursor.rowcount = 1
        self.conn = MagicMock()
        self.conn.cursor.return_value = self.cursor
        self.store = TargetStore(TargetConfig(database="web"), connect=lambda **kw: self.conn)
        self.store.open()

    def executed(self, prefix: str) -> list[tuple]:
        return [
            call.args[1] for call in self.cursor.execute.call_args_list
            if call.args[0].startswith(prefix)
        ]


class TestImportSnapshot(ImporterTestCase):
    """Tests for import_snapshot."""

    def test_counts(self) -> None:
        result = import_snapshot(self.store, _snapshot())

        self.assertEqual(result.imported, 2)
        self.assertEqual(result.labels, 2)
        self.assertEqual(result.dependencies, 1)
        self.assertEqual(result.events, 1)
        self.assertEqual(result.comments, 1)
        self.assertEqual(result.warnings, [])

    def test_runs_in_one_transaction(self) -> None:
        import_snapshot(self.store, _snapshot())

        self.conn.start_transaction.assert_called_once()
        self.conn.commit.assert_called_once()
        self.conn.rollback.assert_not_called()

    def test_issues_upserted(self) -> None:
        """Test that issues use an upsert so re-imports converge."""
        import_snapshot(self.store, _snapshot())

        upserts = self.executed("INSERT INTO issues")
        self.assertEqual([params[0] for params in upserts], ["web-1", "web-2"])
        self.assertIn("ON DUPLICATE KEY UPDATE", UPSERT_ISSUE_SQL)

    def test_related_rows_replaced(self) -> None:
        import_snapshot(self.store, _snapshot())

        self.assertEqual(self.executed("DELETE FROM labels"), [("web-1",), ("web-2",)])
        self.assertEqual(self.executed("DELETE FROM events"), [("web-1",), ("web-2",)])
        self.assertEqual(self.executed(INSERT_LABEL_SQL), [("web-1", "bug"), ("web-1", "ui")])

    def test_duplicate_records_skipped(self) -> None:
        record = Record.from_row({"id": "web-1", "title": "Once"})
        result = import_snapshot(self.store, _snapshot([record, record]))

        self.assertEqual(result.imported, 1)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(len(self.executed("INSERT INTO issues")), 1)

    def test_orphan_rows_skipped_with_warning(self) -> None:
        """Test that rows for issues missing from the snapshot are reported, not written."""
        record = Record.from_row({"id": "web-1", "title": "Kept"})
        snapshot = Snapshot.build(
            [record],
            [("web-gone", "stale")],
            [],
            [
                Event.from_row({"issue_id": "web-1", "event_type": "created"}),
                Event.from_row({"issue_id": "web-gone", "event_type": "closed"}),
            ],
            [],
            {},
        )

        result = import_snapshot(self.store, snapshot)

        self.assertEqual(result.events, 1)
        self.assertEqual(result.orphaned, {"labels": 1, "events": 1})
        self.assertEqual(len(result.warnings), 2)
        self.assertEqual([p[0] for p in self.executed("INSERT INTO events")], ["web-1"])
        self.assertEqual(result.events, snapshot.table_counts()["events"])

    def test_repeated_dependency_written_once(self) -> None:
        records = [Record.from_row({"id": "web-1"}), Record.from_row({"id": "web-2"})]
        deps = [
            Dependency.from_row({"issue_id": "web-2", "depends_on_id": "web-1", "type": "blocks"}),
            Dependency.from_row({"issue_id": "web-2", "depends_on_id": "web-1", "type": "related"}),
        ]
        snapshot = Snapshot.build(records, [], deps, [], [], {})

        result = import_snapshot(self.store, snapshot)

        written = self.executed(INSERT_DEPENDENCY_SQL)
        self.assertEqual(len(written), 1)
        self.assertEqual(written[0][2], "blocks")
        self.assertEqual(result.dependencies, snapshot.table_counts()["dependencies"])
        self.assertIn("repeated dependency", result.warnings[0])

    def test_config_written_first(self) -> None:
        import_snapshot(self.store, _snapshot())

        first_sql = self.cursor.execute.call_args_list[1].args[0]
        self.assertTrue(first_sql.startswith("INSERT INTO config"))

    def test_related_row_failure_is_a_warning(self) -> None:
        def execute(sql, params=()):
            if sql == INSERT_DEPENDENCY_SQL:
                raise mysql.connector.Error("foreign key constraint fails")

        self.cursor.execute.side_effect = execute

        result = import_snapshot(self.store, _snapshot())

        self.assertEqual(result.dependencies, 0)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("web-2 -> web-1", result.warnings[0])
        self.conn.commit.assert_called_once()

    def test_issue_failure_aborts(self) -> None:
        """Test that a failing issue row rolls back the whole import."""
        def execute(sql, params=()):
            if sql == UPSERT_ISSUE_SQL and params[0] == "web-2":
                raise mysql.connector.Error("data too long")

        self.cursor.execute.side_effect = execute

        with self.assertRaises(TargetStoreError) as cm:
            import_snapshot(self.store, _snapshot())

        self.assertIn("web-2", str(cm.exception))
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()


class TestIssueParams(unittest.TestCase):

    def test_column_order_and_conversion(self) -> None:
        record = Record.from_row(
            {"id": "web-1", "title": "T", "pinned": 1, "created_at": "2024-01-01T10:00:00+02:00"}
        )
        params = dict(zip(ISSUE_TABLE_COLUMNS, issue_params(record)))

        self.assertEqual(params["id"], "web-1")
        self.assertEqual(params["pinned"], 1)
        self.assertEqual(params["created_at"], datetime(2024, 1, 1, 8, 0))
        self.assertIsNone(params["created_at"].tzinfo)

    def test_missing_hash_computed(self) -> None:
        record = Record.from_row({"id": "web-1", "title": "T"})
        params = dict(zip(ISSUE_TABLE_COLUMNS, issue_params(record)))
        self.assertEqual(params["content_hash"], record.computed_content_hash())

    def test_existing_hash_kept(self) -> None:
        record = Record.from_row({"id": "web-1", "content_hash": "abc"})
        params = dict(zip(ISSUE_TABLE_COLUMNS, issue_params(record)))
        self.assertEqual(params["content_hash"], "abc")


if __name__ == "__main__":
    unittest.main()
