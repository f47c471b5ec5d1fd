#!/usr/bin/env python3
"""
Initialize the database: create tables, seed plans and optionally create a
tenant with its first API key.

    stashbox-init-db
    stashbox-init-db --tenant "Acme" --plan paid --domain cdn.acme.test
"""
import argparse
import logging
import sys

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from stashbox.core.logging import configure_logging
from stashbox.core.security import generate_api_key
from stashbox.db.session import SessionLocal, engine, init_db
from stashbox.models import APIKey, Tenant

logger = logging.getLogger(__name__)


def create_tenant(name: str, plan_id: str, domain=None, internal: bool = False) -> str:
    """Create a tenant and an API key; returns the full key (shown once)."""
    full_key, key_hash, key_prefix = generate_api_key()
    db = SessionLocal()
    try:
        tenant = Tenant(name=name, plan_id=plan_id, domain=domain, is_internal=internal)
        db.add(tenant)
        db.flush()
        db.add(APIKey(tenant_id=tenant.id, key_hash=key_hash, key_prefix=key_prefix, name=f"{name} default key"))
        db.commit()
        logger.info(f"Created tenant {tenant.id} ({name}) on plan '{plan_id}'")
    finally:
        db.close()
    return full_key


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Initialize the Stashbox database")
    parser.add_argument("--tenant", help="Also create a tenant with this name")
    parser.add_argument("--plan", default="free", help="Plan of the created tenant")
    parser.add_argument("--domain", help="Custom domain serving the tenant's public files")
    parser.add_argument("--internal", action="store_true", help="Tenant's requests are never counted")
    args = parser.parse_args(argv)

    configure_logging("INFO")

    try:
        init_db()
        tables = inspect(engine).get_table_names()
        logger.info(f"Tables ({len(tables)}): {', '.join(sorted(tables))}")

        if args.tenant:
            api_key = create_tenant(args.tenant, args.plan, args.domain, args.internal)
            print(f"API key (store it now, it is not shown again): {api_key}")
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
