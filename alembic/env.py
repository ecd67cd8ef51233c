"""Alembic environment for the Chatdesk schema."""

import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chatdesk.common.config import get_settings
from chatdesk.common.models import Base

# Register every table on Base.metadata
import chatdesk.auth.models  # noqa: F401
import chatdesk.files.models  # noqa: F401
import chatdesk.history.models  # noqa: F401
import chatdesk.tenants.models  # noqa: F401
import chatdesk.usage.models  # noqa: F401

config = context.config

# alembic -x sqlalchemy.url=... upgrade head; otherwise CHATDESK_DB_URL with a sync driver
cmd_url = context.get_x_argument(as_dictionary=True).get("sqlalchemy.url")
if cmd_url:
    config.set_main_option("sqlalchemy.url", cmd_url)
elif not config.get_main_option("sqlalchemy.url"):
    config.set_main_option(
        "sqlalchemy.url", get_settings().db_url.replace("+aiosqlite", "").replace("+asyncpg", ""),
    )

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
