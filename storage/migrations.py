"""Ad-hoc schema helpers: queue indexes and change-capture triggers."""

from __future__ import annotations

import re
from typing import List

from sqlalchemy import inspect, text


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# '%f' yields SS.SSS; the padding matches the six-digit fraction SQLAlchemy writes
_SQLITE_NOW = "strftime('%Y-%m-%d %H:%M:%f000', 'now')"


def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name or ""):
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return name


def _trigger_names(table: str) -> List[str]:
    return [f"trg_{table}_sync_{op}" for op in ("insert", "update", "delete")]


def ensure_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_claimable
            ON sync_queue (status, not_before, created_at)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_claimed_at
            ON sync_queue (status, claimed_at)
            """
        )
    )


def _sqlite_capture_sql(conn, table: str, key_column: str, enqueue_when_disabled: bool) -> List[str]:
    columns = [col["name"] for col in inspect(conn).get_columns(table)]
    if not columns:
        raise ValueError(f"Table {table!r} does not exist")
    if key_column not in columns:
        raise ValueError(f"Table {table!r} has no column {key_column!r}")

    def snapshot(alias: str) -> str:
        pairs = ", ".join(f"'{_identifier(col)}', {alias}.{col}" for col in columns)
        return f"json_object({pairs}, 'document_id', CAST({alias}.{key_column} AS TEXT))"

    guard = (
        f"EXISTS (SELECT 1 FROM index_config WHERE source_table = '{table}'"
        f" AND (is_enabled = 1 OR {1 if enqueue_when_disabled else 0}))"
    )
    statements = []
    for op, alias, payload in (
        ("INSERT", "NEW", snapshot("NEW")),
        ("UPDATE", "NEW", snapshot("NEW")),
        (
            "DELETE",
            "OLD",
            f"json_object('document_id', CAST(OLD.{key_column} AS TEXT), '{key_column}', OLD.{key_column})",
        ),
    ):
        statements.append(
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_{table}_sync_{op.lower()}
            AFTER {op} ON {table}
            WHEN {guard}
            BEGIN
                INSERT INTO sync_queue (
                    source_table, record_id, operation, payload, status,
                    retry_count, created_at, not_before
                )
                VALUES (
                    '{table}', CAST({alias}.{key_column} AS TEXT), '{op}', {payload}, 'pending',
                    0, {_SQLITE_NOW}, {_SQLITE_NOW}
                );
            END
            """
        )
    return statements


def _postgres_capture_sql(table: str, key_column: str, enqueue_when_disabled: bool) -> List[str]:
    flag = "TRUE" if enqueue_when_disabled else "FALSE"
    return [
        f"""
        CREATE OR REPLACE FUNCTION indexsync_capture_{table}() RETURNS trigger AS $$
        DECLARE
            cfg_enabled boolean;
        BEGIN
            SELECT is_enabled INTO cfg_enabled FROM index_config WHERE source_table = TG_TABLE_NAME;
            IF NOT FOUND OR (NOT cfg_enabled AND NOT {flag}) THEN
                RETURN NULL;
            END IF;
            IF TG_OP = 'DELETE' THEN
                INSERT INTO sync_queue (source_table, record_id, operation, payload, status,
                                        retry_count, created_at, not_before)
                VALUES (TG_TABLE_NAME, OLD.{key_column}::text, 'DELETE',
                        jsonb_build_object('document_id', OLD.{key_column}::text,
                                           '{key_column}', OLD.{key_column})::text,
                        'pending', 0, now(), now());
            ELSE
                INSERT INTO sync_queue (source_table, record_id, operation, payload, status,
                                        retry_count, created_at, not_before)
                VALUES (TG_TABLE_NAME, NEW.{key_column}::text, TG_OP,
                        (to_jsonb(NEW) || jsonb_build_object('document_id', NEW.{key_column}::text))::text,
                        'pending', 0, now(), now());
            END IF;
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
        """,
        f"DROP TRIGGER IF EXISTS trg_{table}_sync ON {table}",
        f"""
        CREATE TRIGGER trg_{table}_sync
        AFTER INSERT OR UPDATE OR DELETE ON {table}
        FOR EACH ROW EXECUTE FUNCTION indexsync_capture_{table}()
        """,
    ]


def install_capture_triggers(
    conn,
    table: str,
    *,
    key_column: str = "id",
    enqueue_when_disabled: bool = True,
) -> None:
    """Install row triggers that enqueue into ``sync_queue`` in the writer's transaction."""

    table = _identifier(table)
    key_column = _identifier(key_column)
    dialect = conn.dialect.name
    if dialect == "sqlite":
        statements = _sqlite_capture_sql(conn, table, key_column, enqueue_when_disabled)
    elif dialect == "postgresql":
        statements = _postgres_capture_sql(table, key_column, enqueue_when_disabled)
    else:
        raise NotImplementedError(f"Capture triggers are not available for {dialect}")
    for statement in statements:
        conn.execute(text(statement))


def remove_capture_triggers(conn, table: str) -> None:
    table = _identifier(table)
    if conn.dialect.name == "postgresql":
        conn.execute(text(f"DROP TRIGGER IF EXISTS trg_{table}_sync ON {table}"))
        conn.execute(text(f"DROP FUNCTION IF EXISTS indexsync_capture_{table}()"))
        return
    for name in _trigger_names(table):
        conn.execute(text(f"DROP TRIGGER IF EXISTS {name}"))


def has_capture_triggers(conn, table: str) -> bool:
    table = _identifier(table)
    if conn.dialect.name == "postgresql":
        result = conn.execute(
            text("SELECT 1 FROM pg_trigger WHERE tgname = :name"),
            {"name": f"trg_{table}_sync"},
        )
        return result.first() is not None
    result = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type = 'trigger' AND tbl_name = :table"),
        {"table": table},
    )
    found = {row[0] for row in result}
    return all(name in found for name in _trigger_names(table))


def install_configured_triggers(conn, *, enqueue_when_disabled: bool = True) -> List[str]:
    tables = [row[0] for row in conn.execute(text("SELECT source_table FROM index_config"))]
    installed = []
    for table in tables:
        if not inspect(conn).has_table(table):
            continue
        install_capture_triggers(conn, table, enqueue_when_disabled=enqueue_when_disabled)
        installed.append(table)
    return installed


def run_all(engine, *, capture_mode: str = "orm", enqueue_when_disabled: bool = True) -> None:
    with engine.begin() as conn:
        ensure_queue_indexes(conn)
        if capture_mode == "trigger":
            install_configured_triggers(conn, enqueue_when_disabled=enqueue_when_disabled)


__all__ = [
    "ensure_queue_indexes",
    "has_capture_triggers",
    "install_capture_triggers",
    "install_configured_triggers",
    "remove_capture_triggers",
    "run_all",
]
