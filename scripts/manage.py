#!/usr/bin/env python3
"""
Maintenance commands for the audit document pipeline.

Uses the sync engine (psycopg2), so it runs without the API or a worker.

Usage:
    python scripts/manage.py create-schema
    python scripts/manage.py create-project "FY24 Audit" --client "Acme Ltd" \
        --owner alice --assign bob --assign carol
    python scripts/manage.py create-api-key "alice laptop" --user alice [--admin]
"""

import argparse
import logging

from app.config import settings
from app.db.engine import get_sync_engine, get_sync_session
from app.db.models import CORE_TABLES, ApiKey, Base, Project
from app.services.auth import ADMIN_SCOPE, generate_api_key

logger = logging.getLogger("manage")


def create_schema(args: argparse.Namespace) -> None:
    engine = get_sync_engine()
    if settings.index_backend == "pgvector":
        with engine.begin() as conn:
            conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
        Base.metadata.create_all(engine)
    else:
        Base.metadata.create_all(engine, tables=CORE_TABLES)
    print("Schema created")


def create_project(args: argparse.Namespace) -> None:
    with get_sync_session() as session:
        project = Project(
            name=args.name,
            client_name=args.client,
            created_by=args.owner,
            assigned_to=list(args.assign or []),
        )
        session.add(project)
        session.flush()
        print(f"Project created: {project.id}")


def create_api_key(args: argparse.Namespace) -> None:
    raw_key, key_prefix, key_hash = generate_api_key()
    with get_sync_session() as session:
        session.add(ApiKey(
            name=args.name,
            user_id=args.user,
            key_prefix=key_prefix,
            key_hash=key_hash,
            scopes=[ADMIN_SCOPE] if args.admin else [],
        ))
    # The raw key is never stored; this is the only time it is shown
    print(f"API key for {args.user}: {raw_key}")


def main() -> None:
    logging.basicConfig(level=settings.log_level.upper())
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("create-schema").set_defaults(func=create_schema)

    project = commands.add_parser("create-project")
    project.add_argument("name")
    project.add_argument("--client")
    project.add_argument("--owner", required=True)
    project.add_argument("--assign", action="append")
    project.set_defaults(func=create_project)

    api_key = commands.add_parser("create-api-key")
    api_key.add_argument("name")
    api_key.add_argument("--user", required=True)
    api_key.add_argument("--admin", action="store_true")
    api_key.set_defaults(func=create_api_key)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
