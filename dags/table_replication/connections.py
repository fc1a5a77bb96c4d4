from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from airflow.exceptions import AirflowNotFoundException
from airflow.hooks.base import BaseHook

from table_replication.errors import ConnectionFailed

log = logging.getLogger(__name__)


@contextmanager
def pg_conn(conn_id: str, application_name: str = "table_replication") -> Iterator["psycopg2.extensions.connection"]:
    """psycopg2 connection for an Airflow connection id; closed on exit."""
    try:
        c = BaseHook.get_connection(conn_id)
    except AirflowNotFoundException as e:
        raise ConnectionFailed(f"Airflow connection {conn_id!r} is not defined") from e
    try:
        conn = psycopg2.connect(
            host=c.host,
            port=c.port or 5432,
            dbname=c.schema,
            user=c.login,
            password=c.password,
            application_name=application_name,
            **(c.extra_dejson or {}),
        )
    except psycopg2.OperationalError as e:
        raise ConnectionFailed(f"Cannot connect to {conn_id!r} ({c.host}/{c.schema}): {e}") from e
    log.info("Connected to %s (%s/%s)", conn_id, c.host, c.schema)
    try:
        yield conn
    finally:
        conn.close()
        log.debug("Closed connection %s", conn_id)
