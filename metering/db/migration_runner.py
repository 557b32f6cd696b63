"""
Migration Runner - Brings the schema to the Alembic head before serving.

Enabled with RUN_MIGRATIONS_ON_STARTUP; deployments that migrate out of band
leave it off.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from metering.config import settings
from metering.observability.logging import get_logger

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).resolve().parents[2] / "alembic.ini"


def get_sync_database_url() -> str:
    """Alembic runs on synchronous connections: swap asyncpg for psycopg2."""
    return settings.database_url.replace("asyncpg", "psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", get_sync_database_url().replace("%", "%%"))
    # Keep the structlog configuration installed by setup_logging
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def _revisions(engine: Engine, alembic_cfg: Config) -> tuple[str | None, str | None]:
    """(revision stamped in the database, head of the migration scripts)"""
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, ScriptDirectory.from_config(alembic_cfg).get_current_head()


def run_migrations() -> None:
    """Upgrade to head when the database is behind; raise RuntimeError on failure."""
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = _alembic_config()
    engine = create_engine(get_sync_database_url())
    try:
        current, head = _revisions(engine, alembic_cfg)
        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("running_migrations", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=head)
    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
