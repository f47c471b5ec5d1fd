"""
Database module for SQLAlchemy session management.
"""
from stashbox.db.session import get_db, init_db, seed_plans, check_db_connection, engine, SessionLocal

__all__ = ["get_db", "init_db", "seed_plans", "check_db_connection", "engine", "SessionLocal"]
