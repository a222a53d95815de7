#!/usr/bin/env python3
"""Generate the next Alembic migration from an entity schema and the generated migration history."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from migration_history import (
    HistoryError,
    MigrationSource,
    discover_migrations,
    last_migration_version,
    replay_history,
)
from migration_ops import (
    AlterEnumAddValue,
    AlterTable,
    ColumnChange,
    CreateEnum,
    CreateIndex,
    CreateTable,
    DropEnum,
    DropIndex,
    DropTable,
    Operation,
)
from schema_diff import diff_states, sort_operations
from schema_model import ColumnSpec, Schema, SchemaError, build_desired_state, resolve_schema

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path("migrations/versions")
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

SA_TYPES = {
    "uuid": "sa.Uuid()",
    "string": "sa.String()",
    "integer": "sa.Integer()",
    "float": "sa.Float()",
    "boolean": "sa.Boolean()",
    "datetime": "sa.DateTime()",
    "date": "sa.Date()",
    "decimal": "sa.Numeric()",
    "json": "sa.JSON()",
}

# Postgres type names used in USING casts.
PG_TYPES = {
    "uuid": "uuid",
    "string": "varchar",
    "integer": "integer",
    "float": "double precision",
    "boolean": "boolean",
    "datetime": "timestamp",
    "date": "date",
    "decimal": "numeric",
    "json": "json",
}


@dataclasses.dataclass
class MigrationFile:
    version: int
    operations: list[Operation]
    path: Path
    code: str


def render_type(col_type: str) -> str:
    if col_type in SA_TYPES:
        return SA_TYPES[col_type]
    return f"postgresql.ENUM(name={col_type!r}, create_type=False)"


def foreign_key_name(table: str, column: str) -> str:
    return f"{table}_{column}_fkey"


def render_column(table: str, name: str, spec: ColumnSpec) -> str:
    parts = [repr(name), render_type(spec.type)]
    if spec.references:
        fk_args = [repr(f"{spec.references}.id"), f"name={foreign_key_name(table, name)!r}"]
        if spec.on_delete == "cascade":
            fk_args.append("ondelete='CASCADE'")
        parts.append(f"sa.ForeignKey({', '.join(fk_args)})")
    if spec.primary_key:
        parts.append("primary_key=True")
    parts.append(f"nullable={spec.nullable}")
    if spec.default is not None:
        parts.append(f"server_default={spec.default!r}")
    return f"sa.Column({', '.join(parts)})"


def quote_sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_modify(table: str, change: ColumnChange) -> list[str]:
    changes = change.change_map()
    col = change.column
    kwargs: list[str] = []
    if "type" in changes:
        kwargs.append(f"type_={render_type(changes['type'])}")
        if change.cast:
            target = PG_TYPES.get(changes["type"], changes["type"])
            kwargs.append(f"postgresql_using={f'{col}::{target}'!r}")
    if "nullable" in changes:
        kwargs.append(f"nullable={changes['nullable']}")
    if "default" in changes:
        kwargs.append(f"server_default={changes['default']!r}")

    lines: list[str] = []
    if kwargs:
        lines.append(f"batch_op.alter_column({col!r}, {', '.join(kwargs)})")
    if "references" in changes:
        fk_name = foreign_key_name(table, col)
        if change.previous is None or change.previous.references:
            lines.append(f"batch_op.drop_constraint({fk_name!r}, type_='foreignkey')")
        if changes["references"]:
            ondelete = ", ondelete='CASCADE'" if changes.get("on_delete") == "cascade" else ""
            lines.append(
                f"batch_op.create_foreign_key({fk_name!r}, {changes['references']!r}, [{col!r}], ['id']{ondelete})"
            )
    return lines


def render_column_change(table: str, change: ColumnChange) -> list[str]:
    if change.action == "add":
        return [f"batch_op.add_column({render_column(table, change.column, change.spec)})"]
    if change.action == "remove":
        return [f"batch_op.drop_column({change.column!r})"]
    return render_modify(table, change)


def render_operation(op: Operation) -> list[str]:
    """Source lines for one operation, relative to the upgrade() body indentation."""
    if isinstance(op, CreateEnum):
        values = ", ".join(quote_sql_literal(v) for v in op.enum.values)
        return [f"op.execute({f'create type {op.enum.name} as enum ({values})'!r})"]
    if isinstance(op, AlterEnumAddValue):
        sql = f"alter type {op.enum} add value {quote_sql_literal(op.value)}"
        return [
            "with op.get_context().autocommit_block():",
            f"    op.execute({sql!r})",
        ]
    if isinstance(op, DropEnum):
        return [f"op.execute({f'drop type {op.name}'!r})"]
    if isinstance(op, CreateTable):
        lines = ["op.create_table(", f"    {op.name!r},"]
        for name, spec in op.table.columns.items():
            lines.append(f"    {render_column(op.name, name, spec)},")
        lines.append(")")
        return lines
    if isinstance(op, DropTable):
        return [f"op.drop_table({op.name!r}, if_exists=True)"]
    if isinstance(op, AlterTable):
        lines = [f"with op.batch_alter_table({op.name!r}) as batch_op:"]
        for change in op.changes:
            lines.extend(f"    {line}" for line in render_column_change(op.name, change))
        return lines
    if isinstance(op, CreateIndex):
        idx = op.index
        return [f"op.create_index({idx.name!r}, {idx.table!r}, {list(idx.columns)!r}, unique={idx.unique})"]
    if isinstance(op, DropIndex):
        return [f"op.drop_index({op.name!r}, table_name={op.table!r})"]
    raise ValueError(f"Unknown operation {op!r}")


def revision_id(version: int) -> str:
    return f"{version:04d}"


def render_migration(operations: list[Operation], version: int, created_at: datetime) -> str:
    previous = revision_id(version - 1) if version > 1 else None
    lines: list[str] = [
        f'"""schemagen migration v{version}',
        "",
        f"Revision ID: {revision_id(version)}",
        f"Revises: {previous or ''}",
        f"Create Date: {created_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
        '"""',
        "from alembic import op",
        "import sqlalchemy as sa",
        "from sqlalchemy.dialects import postgresql",
        "",
        "",
        "# revision identifiers, used by Alembic.",
        f"revision = {revision_id(version)!r}",
        f"down_revision = {previous!r}",
        "branch_labels = None",
        "depends_on = None",
        "",
        "",
        "def upgrade() -> None:",
    ]
    previous_block = False
    for idx, op in enumerate(operations):
        rendered = render_operation(op)
        block = len(rendered) > 1
        if idx and (block or previous_block):
            lines.append("")
        lines.extend(f"    {line}" for line in rendered)
        previous_block = block
    lines.extend(
        [
            "",
            "",
            "def downgrade() -> None:",
            "    # Forward-only: schemagen never generates rollbacks.",
            "    pass",
            "",
        ]
    )
    return "\n".join(lines)


def migration_filename(version: int, created_at: datetime) -> str:
    return f"{created_at.strftime(TIMESTAMP_FORMAT)}_schemagen_v{version}.py"


def describe_operation(op: Operation) -> str:
    if isinstance(op, CreateEnum):
        return f"create enum {op.enum.name} ({', '.join(op.enum.values)})"
    if isinstance(op, AlterEnumAddValue):
        return f"add value {op.value} to enum {op.enum}"
    if isinstance(op, DropEnum):
        return f"drop enum {op.name}"
    if isinstance(op, CreateTable):
        return f"create table {op.name} ({', '.join(op.table.columns)})"
    if isinstance(op, DropTable):
        return f"drop table {op.name}"
    if isinstance(op, AlterTable):
        changes = ", ".join(f"{c.action} {c.column}" for c in op.changes)
        return f"alter table {op.name}: {changes}"
    if isinstance(op, CreateIndex):
        return f"create index {op.index.name} on {op.index.table} ({', '.join(op.index.columns)})"
    if isinstance(op, DropIndex):
        return f"drop index {op.name} on {op.table}"
    return repr(op)


def plan_migration(schema: Schema, sources: list[MigrationSource], strict: bool = False) -> list[Operation]:
    """Sorted operations needed to take the replayed history to the schema."""
    desired = build_desired_state(schema)
    existing = replay_history(sources, strict=strict)
    return sort_operations(diff_states(desired, existing))


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def generate(
    schema: Schema | str | Path,
    migrations_dir: str | Path = DEFAULT_MIGRATIONS_DIR,
    dry_run: bool = False,
    strict: bool = False,
    now: datetime | None = None,
) -> MigrationFile | None:
    """Write the next migration, or return None when the history already matches the schema.

    With dry_run the migration is computed and returned but not written.
    """
    schema = resolve_schema(schema)
    migrations_dir = Path(migrations_dir)
    sources = discover_migrations(migrations_dir)

    operations = plan_migration(schema, sources, strict=strict)
    if not operations:
        logger.info("No changes")
        return None

    version = last_migration_version(sources) + 1
    created_at = now or datetime.now(timezone.utc)
    migration = MigrationFile(
        version=version,
        operations=operations,
        path=migrations_dir / migration_filename(version, created_at),
        code=render_migration(operations, version, created_at),
    )
    for op in operations:
        logger.debug("v%d: %s", version, describe_operation(op))

    if not dry_run:
        write_text(migration.path, migration.code)
    return migration


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate the next migration from an entity schema")
    parser.add_argument("schema", help="Schema YAML file, or importable module exposing SCHEMA or schema()")
    parser.add_argument(
        "--migrations-dir",
        default=str(DEFAULT_MIGRATIONS_DIR),
        help="Directory holding generated migrations",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the migration instead of writing it")
    parser.add_argument("--check", action="store_true", help="Exit non-zero if a migration would be generated")
    parser.add_argument("--strict", action="store_true", help="Fail on migration code that cannot be parsed")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        migration = generate(
            args.schema,
            migrations_dir=args.migrations_dir,
            dry_run=args.dry_run or args.check,
            strict=args.strict,
        )
    except (SchemaError, HistoryError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2

    if migration is None:
        print("No changes")
        return 0

    if args.check:
        print(f"[check] pending migration v{migration.version}:", file=sys.stderr)
        for op in migration.operations:
            print(f"  - {describe_operation(op)}", file=sys.stderr)
        return 1

    if args.dry_run:
        print(f"# {migration.path}")
        print(migration.code, end="")
        return 0

    print(f"Generated {migration.path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
