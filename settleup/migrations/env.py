"""
settleup/migrations/env.py — Alembic environment for the settlement-record
schema.

The database URL is not read here: it comes from the same config class the
app uses (settleup.config), so `postgres://` normalisation and the .env
lookup live in one place. TEST_RUN=1 selects TestingConfig, otherwise
FLASK_ENV picks the class.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# Project root on sys.path so `alembic -c settleup/alembic.ini` works from
# a plain checkout as well as an installed package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from settleup.config import ActiveConfig, TestingConfig  # noqa: E402
from settleup.app.extensions import db  # noqa: E402
from settleup.app.models import settlement_record  # noqa: E402,F401

target_metadata = db.metadata

config_class = TestingConfig if os.getenv("TEST_RUN") else ActiveConfig
db_url = config_class.SQLALCHEMY_DATABASE_URI

config = context.config
config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def include_object(obj, name, type_, reflected, compare_to):
    # Autogenerate only manages tables this service owns; other tables in a
    # shared database are left alone.
    if type_ == "table" and reflected and compare_to is None:
        return name in target_metadata.tables
    return True


def _configure_kwargs(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "include_object": include_object,
        # SQLite cannot ALTER constraints in place.
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    context.configure(
        url=db_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(db_url),
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
        context.configure(connection=connection, **_configure_kwargs(db_url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
