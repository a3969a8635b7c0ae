import psycopg
from contextlib import contextmanager
from pathlib import Path

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn(conninfo: str):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(conninfo) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(conninfo: str) -> None:
    """create the referral tables if they don't exist yet."""
    with get_conn(conninfo) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_PATH.read_text())
        conn.commit()
