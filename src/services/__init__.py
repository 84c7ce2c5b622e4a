"""Infrastructure services for the SEO agent core."""

from services.database import (
    check_connection,
    create_db_engine,
    create_session_factory,
    init_schema,
    run_in_session,
    run_migrations,
)

__all__ = [
    "check_connection",
    "create_db_engine",
    "create_session_factory",
    "init_schema",
    "run_in_session",
    "run_migrations",
]
