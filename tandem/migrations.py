"""
Schema migrations for the score service.
Each migration is a named batch of SQL statements applied at most once.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional
from datetime import datetime, timezone

from . import config
from .logging_utils import get_logger

logger = get_logger("tandem.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_leaderboard_indexes",
        """
        -- one row per (player, variant, date) and (player, variant)
        CREATE UNIQUE INDEX IF NOT EXISTS idx_daily_player_variant_date ON dailyscore(player_id, variant, date);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_streak_player_variant ON streakscore(player_id, variant);

        -- ranking scans
        CREATE INDEX IF NOT EXISTS idx_daily_variant_date_seconds ON dailyscore(variant, date, seconds);
        CREATE INDEX IF NOT EXISTS idx_streak_variant_days ON streakscore(variant, days)
        """,
    ),
    (
        "002_stats_and_puzzle_keys",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_stats_player_variant ON statsrow(player_id, variant);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_puzzle_variant_date ON puzzle(variant, date)
        """,
    ),
]


def get_engine():
    db_path = config.DATABASE_URL
    return create_engine(db_path, echo=False, connect_args={"check_same_thread": False} if db_path.startswith("sqlite") else {})


def ensure_migration_table(engine):
    """Ensure the migration tracking table exists"""
    SQLModel.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it; returns False when it was already applied"""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"event": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                lines = [ln for ln in statement.splitlines() if ln.strip() and not ln.strip().startswith('--')]
                if lines:
                    session.execute(text("\n".join(lines)))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("migration_failed", extra={"event": migration_name, "error": str(e)})
            raise

    logger.info("migration_applied", extra={"event": migration_name})
    return True


def run_migrations(engine=None):
    """Run all pending migrations"""
    engine = engine or get_engine()
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("migrations_complete", extra={"event": ",".join(applied) or "none"})
    return applied


if __name__ == "__main__":
    from .logging_utils import setup_logging
    setup_logging()
    run_migrations()
