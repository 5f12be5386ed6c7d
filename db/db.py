from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psycopg

from config import get_settings

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn(dsn: Optional[str] = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    dsn defaults to REFERRAL_DATABASE_URL.
    """
    with psycopg.connect(dsn or get_settings().database_url) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(dsn: Optional[str] = None) -> None:
    """create tables if missing (idempotent)."""
    with get_conn(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        conn.commit()
