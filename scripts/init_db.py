"""Database initialization script.

Creates the PostgreSQL database (if missing) and the balbot schema from
scripts/sql/postgres_schema.sql. The schema is idempotent.

Usage:
    python scripts/init_db.py [--config-dir configs]
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import asyncpg

from balbot.config import PostgresConfig, load_config

SQL_DIR = Path(__file__).resolve().parent / "sql"


async def ensure_database(config: PostgresConfig) -> None:
    """Create the target database through the default 'postgres' database.

    Args:
        config: PostgreSQL connection configuration.
    """
    try:
        sys_conn = await asyncpg.connect(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database="postgres",
        )
    except (OSError, asyncpg.PostgresError) as e:
        print(f"Warning: Could not check/create database: {e}")
        print("Assuming database already exists, proceeding with schema creation...")
        return

    try:
        db_exists = await sys_conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", config.database
        )
        if not db_exists:
            await sys_conn.execute(f'CREATE DATABASE "{config.database}"')
            print(f"Created database '{config.database}'")
    finally:
        await sys_conn.close()


async def init_postgres(config: PostgresConfig) -> None:
    """Initialize the PostgreSQL schema.

    Args:
        config: PostgreSQL connection configuration.
    """
    print(f"Connecting to PostgreSQL at {config.host}:{config.port}/{config.database}...")
    await ensure_database(config)

    conn = await asyncpg.connect(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        database=config.database,
    )
    try:
        schema_sql = (SQL_DIR / "postgres_schema.sql").read_text()
        await conn.execute(schema_sql)
        print("PostgreSQL schema initialized successfully.")
    finally:
        await conn.close()


async def main() -> None:
    """Run database initialization."""
    parser = argparse.ArgumentParser(description="Initialize the balbot database")
    parser.add_argument(
        "--config-dir",
        default="configs",
        help="Path to configuration directory (default: configs)",
    )
    args = parser.parse_args()

    config = load_config(config_dir=args.config_dir)
    await init_postgres(config.database.postgres)
    print("Database initialization complete.")


if __name__ == "__main__":
    asyncio.run(main())
