"""
Tests for the startup migration runner.
"""

from unittest.mock import MagicMock, patch

import pytest

from metering.db import migration_runner
from metering.db.migration_runner import get_sync_database_url, run_migrations


@pytest.fixture
def engine():
    engine = MagicMock()
    with patch.object(migration_runner, "create_engine", return_value=engine):
        yield engine


def test_sync_url_uses_psycopg2():
    assert get_sync_database_url().startswith("postgresql+psycopg2://")


def test_up_to_date_skips_upgrade(engine):
    with (
        patch.object(migration_runner, "_revisions", return_value=("0001", "0001")),
        patch.object(migration_runner.command, "upgrade") as upgrade,
    ):
        run_migrations()

    upgrade.assert_not_called()
    engine.dispose.assert_called_once()


def test_behind_upgrades_to_head(engine):
    with (
        patch.object(migration_runner, "_revisions", return_value=(None, "0001")),
        patch.object(migration_runner.command, "upgrade") as upgrade,
    ):
        run_migrations()

    assert upgrade.call_args.args[1] == "head"
    engine.dispose.assert_called_once()


def test_failure_is_wrapped(engine):
    with (
        patch.object(migration_runner, "_revisions", return_value=(None, "0001")),
        patch.object(migration_runner.command, "upgrade", side_effect=ValueError("bad ddl")),
    ):
        with pytest.raises(RuntimeError, match="bad ddl"):
            run_migrations()

    engine.dispose.assert_called_once()


def test_missing_config_is_skipped(tmp_path, engine):
    with patch.object(migration_runner, "ALEMBIC_INI_PATH", tmp_path / "alembic.ini"):
        run_migrations()

    engine.dispose.assert_not_called()
