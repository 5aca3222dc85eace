"""
Database connection manager for the defect criteria service.
SQLite with one connection per request.
"""
import logging
import os
import sqlite3
from contextlib import contextmanager

from flask import g, current_app

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'schema.sql')


def get_db():
    """Get database connection for current request."""
    if 'db' not in g:
        db_path = current_app.config['DATABASE_PATH']
        g.db = sqlite3.connect(db_path, timeout=current_app.config.get('DATABASE_TIMEOUT', 5.0))
        g.db.row_factory = sqlite3.Row
        # Enable foreign keys
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


def close_db(e=None):
    """Close database connection at end of request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def create_schema(db_path):
    """Run schema.sql against the database at db_path."""
    conn = sqlite3.connect(db_path)
    try:
        with open(SCHEMA_PATH, 'r') as f:
            conn.executescript(f.read())
        conn.commit()
    finally:
        conn.close()


def init_db(app):
    """Initialize database with schema if not exists."""
    app.teardown_appcontext(close_db)

    db_path = app.config['DATABASE_PATH']

    # Ensure data directory exists
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    if not os.path.exists(db_path):
        create_schema(db_path)
        logger.info("Database initialized at %s", db_path)


def query_db(query, args=(), one=False):
    """Execute query and return results."""
    cur = get_db().execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


@contextmanager
def read_snapshot():
    """
    Run a group of reads inside one transaction.

    All SELECTs issued inside the block see the same committed state, so a
    concurrent writer cannot make them disagree with each other.
    """
    db = get_db()
    if db.in_transaction:
        # Already inside a transaction: it is the snapshot.
        yield db
        return
    db.execute("BEGIN")
    try:
        yield db
    finally:
        db.rollback()


