"""Index creation and database tuning for execution history queries."""

from sqlalchemy import inspect, text
from . import database
from ..core.logging import get_logger

logger = get_logger(__name__)

# Columns added after the first release: (table, column, DDL type)
ADDED_COLUMNS = [
    ("node_executions", "checkpoint", "JSON"),
]

EXECUTION_INDEXES = [
    ("idx_executions_workflow_created", "workflow_executions(workflow_id, created_at)"),
    ("idx_executions_status_scheduled", "workflow_executions(status, scheduled_for)"),
    ("idx_executions_org_created", "workflow_executions(organization_id, created_at)"),
    ("idx_node_executions_status_resume", "node_executions(status, resume_at)"),
    ("idx_execution_logs_execution_ts", "execution_logs(workflow_execution_id, timestamp)"),
    ("idx_triggers_lookup", "workflow_triggers(is_active, module, event_type)"),
    ("idx_triggers_schedule", "workflow_triggers(type, next_run_at)"),
]


def create_indexes_for_execution_queries():
    """Create indexes used by the worker, scheduler and analytics queries."""
    try:
        with database.engine.connect() as connection:
            for name, target in EXECUTION_INDEXES:
                connection.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {target}"))
            connection.commit()
            logger.info(f"Ensured {len(EXECUTION_INDEXES)} execution indexes")

    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def add_missing_columns():
    """Add columns that tables created by an older release do not have yet."""
    try:
        inspector = inspect(database.engine)
        with database.engine.connect() as connection:
            for table, column, ddl_type in ADDED_COLUMNS:
                existing = {info["name"] for info in inspector.get_columns(table)}
                if column in existing:
                    continue
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
                logger.info(f"Added column {table}.{column}")
            connection.commit()

    except Exception as e:
        logger.error(f"Failed to add database columns: {str(e)}")
        raise


def optimize_sqlite():
    """Enable WAL so readers do not block the worker threads."""
    if "sqlite" not in str(database.engine.url) or ":memory:" in str(database.engine.url):
        return
    try:
        with database.engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA cache_size=10000"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations():
    """Run all index and tuning migrations."""
    logger.info("Starting database migrations")
    add_missing_columns()
    create_indexes_for_execution_queries()
    optimize_sqlite()
    logger.info("Database migrations completed")


if __name__ == "__main__":
    run_migrations()
