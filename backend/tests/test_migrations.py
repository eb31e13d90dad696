"""
Tests for the Alembic schema migration.

Runs upgrade/downgrade against a throwaway SQLite database and checks the
resulting schema matches what the ORM models expect.
"""

import importlib

import pytest
import sqlalchemy as sa
from alembic.runtime.migration import MigrationContext
from alembic.operations import Operations

migration = importlib.import_module("db.migrations.versions.001_retention_tables")


@pytest.fixture
def connection():
    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        yield conn
    engine.dispose()


def _run(connection, step):
    context = MigrationContext.configure(connection)
    with Operations.context(context):
        step()


class TestRetentionMigration:
    def test_upgrade_creates_tables(self, connection):
        _run(connection, migration.upgrade)
        inspector = sa.inspect(connection)
        assert {"data_retention_policies", "data_archival_log"} <= set(inspector.get_table_names())

        columns = {c["name"] for c in inspector.get_columns("data_archival_log")}
        assert {"records_processed", "records_archived", "records_failed", "status", "error_message"} <= columns

        uniques = inspector.get_unique_constraints("data_archival_log")
        assert any(u["column_names"] == ["policy_id", "execution_date"] for u in uniques)

    def test_unique_execution_per_day(self, connection):
        _run(connection, migration.upgrade)
        connection.execute(
            sa.text(
                "INSERT INTO data_retention_policies (policy_id, entity_type, retention_days, archival_action) "
                "VALUES ('p1', 'AUDIT_LOG', 90, 'EXPORT_TO_S3')"
            )
        )
        insert = sa.text(
            "INSERT INTO data_archival_log (id, policy_id, execution_date, entity_type, start_time) "
            "VALUES (:id, 'p1', '2026-03-02', 'AUDIT_LOG', '2026-03-02 02:00:00')"
        )
        connection.execute(insert, {"id": "a"})
        with pytest.raises(sa.exc.IntegrityError):
            connection.execute(insert, {"id": "b"})

    def test_downgrade_drops_tables(self, connection):
        _run(connection, migration.upgrade)
        _run(connection, migration.downgrade)
        assert sa.inspect(connection).get_table_names() == []
