"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from rebalancer.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations(db: Engine):
    """Repair rows written before the active/closed check constraint existed."""
    inspector = inspect(db)
    if "position" not in inspector.get_table_names():
        return

    with db.connect() as conn:
        fixed = conn.execute(text(
            "UPDATE position SET closed_at = NULL "
            "WHERE is_active = :active AND closed_at IS NOT NULL"
        ), {"active": True}).rowcount
        if fixed:
            logger.warning(f"Migrating: cleared closed_at on {fixed} active positions")
        conn.commit()

    # SQLite cannot add constraints to an existing table; new tables get it from the model
    if db.dialect.name != "postgresql":
        return

    existing = {c["name"] for c in inspector.get_check_constraints("position")}
    if "ck_position_closed_consistency" not in existing:
        logger.info("Migrating: adding ck_position_closed_consistency")
        with db.connect() as conn:
            conn.execute(text(
                "ALTER TABLE position ADD CONSTRAINT ck_position_closed_consistency CHECK ("
                "(is_active AND closed_at IS NULL) OR (NOT is_active AND closed_at IS NOT NULL))"
            ))
            conn.commit()


def create_db_and_tables(db: Engine | None = None):
    """Create all tables. Called on startup."""
    import rebalancer.models  # registers tables on the metadata

    db = db or engine
    SQLModel.metadata.create_all(db)
    _run_migrations(db)
