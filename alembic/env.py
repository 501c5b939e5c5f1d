from __future__ import annotations

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from common_core.db import Base
from apps.helpdesk_backend import models as helpdesk_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    # Prefer an explicit SQLALCHEMY_DATABASE_URL, otherwise the one the services use.
    url = os.environ.get("SQLALCHEMY_DATABASE_URL")
    if url:
        return url
    return os.environ.get("HELPDESK_DB_URL", "")


def run_migrations_offline() -> None:
    url = get_url()
    if not url:
        raise RuntimeError("HELPDESK_DB_URL / SQLALCHEMY_DATABASE_URL must be set for Alembic migrations")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = get_url()
    if not url:
        raise RuntimeError("HELPDESK_DB_URL / SQLALCHEMY_DATABASE_URL must be set for Alembic migrations")

    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url

    connectable = engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
