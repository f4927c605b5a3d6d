"""
Migration Runner - Applies Alembic migrations before the store is used.

Runs only when FAUCET_RUN_MIGRATIONS is set; otherwise the schema is
expected to be managed out of band with `alembic upgrade head`.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def sync_database_url(url: str) -> str:
    """Alembic's command API is synchronous; swap asyncpg for psycopg2."""
    return url.replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def _alembic_config(database_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url(database_url).replace("%", "%%"))
    return alembic_cfg


def run_migrations(database_url: str) -> None:
    """
    Run pending Alembic migrations.

    Only upgrades when the database is behind the script head.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        alembic_cfg = _alembic_config(database_url)
        engine = create_engine(sync_database_url(database_url))

        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_up_to_date", revision=current)
                return

            logger.info("running_migrations", current=current, head=head)
            command.upgrade(alembic_cfg, "head")
            logger.info("migrations_complete", revision=_get_current_revision(engine))

        finally:
            engine.dispose()

    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e

