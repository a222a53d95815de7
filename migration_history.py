"""Read generated migration history and replay it into the existing schema state."""

from __future__ import annotations

import ast
import dataclasses
import logging
import re
from pathlib import Path
from typing import Any, Iterable

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
from schema_model import ColumnSpec, EnumSpec, IndexSpec, SchemaState, TableSpec, normalize_default

logger = logging.getLogger(__name__)

MIGRATION_GLOB = "*_schemagen_v*.py"
VERSION_RE = re.compile(r"^(.+)_schemagen_v(\d+)\.py$")

CREATE_TYPE_RE = re.compile(r"^\s*create\s+type\s+\"?(\w+)\"?\s+as\s+enum\s*\((.*)\)\s*;?\s*$", re.I | re.S)
ADD_VALUE_RE = re.compile(
    r"^\s*alter\s+type\s+\"?(\w+)\"?\s+add\s+value\s+(?:if\s+not\s+exists\s+)?'((?:[^']|'')*)'\s*;?\s*$",
    re.I | re.S,
)
DROP_TYPE_RE = re.compile(r"^\s*drop\s+type\s+(?:if\s+exists\s+)?\"?(\w+)\"?(?:\s+cascade)?\s*;?\s*$", re.I | re.S)
ENUM_VALUE_RE = re.compile(r"'((?:[^']|'')*)'")

# SQLAlchemy type names mapped back onto the column type set.
TYPE_NAMES = {
    "Uuid": "uuid",
    "UUID": "uuid",
    "String": "string",
    "Text": "string",
    "Unicode": "string",
    "UnicodeText": "string",
    "VARCHAR": "string",
    "TEXT": "string",
    "Integer": "integer",
    "BigInteger": "integer",
    "SmallInteger": "integer",
    "INTEGER": "integer",
    "Float": "float",
    "Double": "float",
    "REAL": "float",
    "Boolean": "boolean",
    "BOOLEAN": "boolean",
    "DateTime": "datetime",
    "TIMESTAMP": "datetime",
    "Date": "date",
    "DATE": "date",
    "Numeric": "decimal",
    "NUMERIC": "decimal",
    "DECIMAL": "decimal",
    "JSON": "json",
    "JSONB": "json",
}
ENUM_TYPE_NAMES = ("ENUM", "Enum")


class HistoryError(ValueError):
    """Raised when the migration history cannot be replayed consistently."""


class UnrecognizedShape(Exception):
    pass


@dataclasses.dataclass
class MigrationSource:
    path: Path
    version: int
    text: str


def migration_version(path: Path) -> int:
    m = VERSION_RE.match(path.name)
    if not m:
        raise HistoryError(f"Migration file name carries no version: {path.name}")
    return int(m.group(2))


def discover_migrations(migrations_dir: Path) -> list[MigrationSource]:
    """Generator-authored migrations, ordered by timestamp prefix then version."""
    if not migrations_dir.is_dir():
        return []
    found: list[tuple[str, int, Path]] = []
    for path in migrations_dir.glob(MIGRATION_GLOB):
        m = VERSION_RE.match(path.name)
        if not m:
            logger.debug("Ignoring %s: not a generated migration name", path.name)
            continue
        found.append((m.group(1), int(m.group(2)), path))
    return [
        MigrationSource(path=path, version=version, text=path.read_text(encoding="utf-8"))
        for _, version, path in sorted(found)
    ]


def last_migration_version(sources: list[MigrationSource]) -> int:
    return sources[-1].version if sources else 0


def check_contiguity(sources: list[MigrationSource]) -> None:
    for expected, source in enumerate(sources, 1):
        if source.version != expected:
            raise HistoryError(
                f"Migration history is not contiguous: expected version {expected}, "
                f"found {source.version} in {source.path}"
            )


# Parsing


def _literal(node: ast.AST) -> Any:
    try:
        return ast.literal_eval(node)
    except (ValueError, TypeError) as exc:
        raise UnrecognizedShape(f"expected a literal, got {ast.unparse(node)}") from exc


def _string(node: ast.AST) -> str:
    value = _literal(node)
    if not isinstance(value, str):
        raise UnrecognizedShape(f"expected a string, got {ast.unparse(node)}")
    return value


def _callee(node: ast.AST) -> tuple[str | None, str]:
    """Return (receiver, name) for `receiver.name(...)` or `name(...)` calls."""
    if not isinstance(node, ast.Call):
        raise UnrecognizedShape(f"expected a call, got {ast.unparse(node)}")
    func = node.func
    if isinstance(func, ast.Attribute):
        receiver = func.value.id if isinstance(func.value, ast.Name) else None
        return receiver, func.attr
    if isinstance(func, ast.Name):
        return None, func.id
    raise UnrecognizedShape(f"unsupported call target {ast.unparse(func)}")


def _keywords(call: ast.Call) -> dict[str, ast.AST]:
    return {kw.arg: kw.value for kw in call.keywords if kw.arg is not None}


def _arg(call: ast.Call, position: int, keyword: str | None = None) -> ast.AST:
    if len(call.args) > position:
        return call.args[position]
    kwargs = _keywords(call)
    if keyword and keyword in kwargs:
        return kwargs[keyword]
    raise UnrecognizedShape(f"missing argument {keyword or position} in {ast.unparse(call)}")


def _sql_text(node: ast.AST) -> str:
    if isinstance(node, ast.Call) and _callee(node)[1] == "text" and node.args:
        return _string(node.args[0])
    return _string(node)


def _default(node: ast.AST) -> str | None:
    if isinstance(node, ast.Call):
        return normalize_default(_sql_text(node))
    return normalize_default(_literal(node))


def _column_type(node: ast.AST) -> str:
    if isinstance(node, ast.Call):
        _, name = _callee(node)
        if name in ENUM_TYPE_NAMES:
            kwargs = _keywords(node)
            if "name" not in kwargs:
                raise UnrecognizedShape(f"enum type without a name: {ast.unparse(node)}")
            return _string(kwargs["name"])
    elif isinstance(node, ast.Attribute):
        name = node.attr
    elif isinstance(node, ast.Name):
        name = node.id
    else:
        raise UnrecognizedShape(f"unsupported column type {ast.unparse(node)}")
    if name not in TYPE_NAMES:
        raise UnrecognizedShape(f"unsupported column type {ast.unparse(node)}")
    return TYPE_NAMES[name]


def _on_delete(node: ast.AST | None) -> str:
    if node is None:
        return "nothing"
    value = _literal(node)
    return "cascade" if isinstance(value, str) and value.upper() == "CASCADE" else "nothing"


def _foreign_key_target(node: ast.AST) -> tuple[str, str]:
    receiver_call = _callee(node)
    if receiver_call[1] != "ForeignKey":
        raise UnrecognizedShape(f"unsupported column constraint {ast.unparse(node)}")
    target = _string(_arg(node, 0, "column"))
    table = target.split(".", 1)[0]
    return table, _on_delete(_keywords(node).get("ondelete"))


def _parse_column(node: ast.AST) -> tuple[str, ColumnSpec]:
    if _callee(node)[1] != "Column":
        raise UnrecognizedShape(f"expected sa.Column, got {ast.unparse(node)}")
    name = _string(_arg(node, 0))
    spec = ColumnSpec(type=_column_type(_arg(node, 1)))

    for extra in node.args[2:]:
        spec.references, spec.on_delete = _foreign_key_target(extra)

    kwargs = _keywords(node)
    spec.primary_key = bool(_literal(kwargs["primary_key"])) if "primary_key" in kwargs else False
    spec.nullable = bool(_literal(kwargs["nullable"])) if "nullable" in kwargs else not spec.primary_key
    if "server_default" in kwargs:
        spec.default = _default(kwargs["server_default"])
    if "unique" in kwargs:
        spec.unique = bool(_literal(kwargs["unique"]))
    return name, spec


def _parse_create_table(call: ast.Call) -> list[Operation]:
    table = TableSpec(name=_string(_arg(call, 0, "table_name")))
    for item in call.args[1:]:
        _, kind = _callee(item)
        if kind == "PrimaryKeyConstraint":
            for col in item.args:
                name = _string(col)
                if name not in table.columns:
                    raise UnrecognizedShape(f"primary key on undeclared column {name} in {table.name}")
                table.columns[name].primary_key = True
                table.columns[name].nullable = False
            continue
        name, spec = _parse_column(item)
        if name in table.columns:
            raise UnrecognizedShape(f"column {name} declared twice in {table.name}")
        table.columns[name] = spec
    return [CreateTable(table=table)]


def _alter_column_change(column: str, kwargs: dict[str, ast.AST]) -> ColumnChange:
    changes: dict[str, Any] = {}
    cast = False
    for key, value in kwargs.items():
        if key == "type_":
            changes["type"] = _column_type(value)
        elif key == "nullable":
            changes["nullable"] = bool(_literal(value))
        elif key == "server_default":
            changes["default"] = _default(value)
        elif key == "postgresql_using":
            cast = True
        elif not key.startswith("existing_"):
            raise UnrecognizedShape(f"unsupported alter_column option {key}")
    if not changes:
        raise UnrecognizedShape(f"alter_column on {column} changes nothing")
    return ColumnChange.modify(column, changes, cast=cast)


def _fkey_column(table: str, constraint: str) -> str:
    m = re.fullmatch(rf"{re.escape(table)}_(\w+)_fkey", constraint)
    if not m:
        raise UnrecognizedShape(f"cannot map constraint {constraint} onto a column of {table}")
    return m.group(1)


def _column_change(method: str, args: list[ast.AST], kwargs: dict[str, ast.AST], table: str) -> ColumnChange:
    """Column-level changes shared by `op.*` and `batch_op.*` forms (table argument stripped)."""
    if method == "add_column":
        if not args:
            raise UnrecognizedShape("add_column without a column")
        name, spec = _parse_column(args[0])
        return ColumnChange.add(name, spec)
    if method == "drop_column":
        if not args:
            raise UnrecognizedShape("drop_column without a column name")
        return ColumnChange.remove(_string(args[0]))
    if method == "alter_column":
        if not args:
            raise UnrecognizedShape("alter_column without a column name")
        return _alter_column_change(_string(args[0]), kwargs)
    if method == "create_foreign_key":
        if len(args) < 3:
            raise UnrecognizedShape("create_foreign_key needs a referent and local columns")
        local = _literal(args[2])
        if not isinstance(local, (list, tuple)) or len(local) != 1:
            raise UnrecognizedShape("only single-column foreign keys are supported")
        changes = {"references": _string(args[1]), "on_delete": _on_delete(kwargs.get("ondelete"))}
        return ColumnChange.modify(local[0], changes)
    if method == "drop_constraint":
        if "type_" not in kwargs or _literal(kwargs["type_"]) != "foreignkey":
            raise UnrecognizedShape("only foreign key constraints can be dropped")
        column = _fkey_column(table, _string(args[0]))
        return ColumnChange.modify(column, {"references": None, "on_delete": "nothing"})
    raise UnrecognizedShape(f"unsupported column operation {method}")


def _parse_with(stmt: ast.With) -> list[Operation]:
    if len(stmt.items) != 1:
        raise UnrecognizedShape("batch_alter_table must be the only context manager")
    item = stmt.items[0]
    receiver, method = _callee(item.context_expr)
    if method == "autocommit_block":
        operations: list[Operation] = []
        for inner in stmt.body:
            operations.extend(_parse_statement(inner))
        return operations
    if receiver != "op" or method != "batch_alter_table":
        raise UnrecognizedShape(f"unsupported context manager {ast.unparse(item.context_expr)}")
    if not isinstance(item.optional_vars, ast.Name):
        raise UnrecognizedShape("batch_alter_table must be bound to a name")
    table = _string(_arg(item.context_expr, 0, "table_name"))
    alias = item.optional_vars.id

    changes: list[ColumnChange] = []
    for inner in stmt.body:
        if not isinstance(inner, ast.Expr):
            raise UnrecognizedShape(f"unsupported statement in batch block: {ast.unparse(inner)}")
        receiver, method = _callee(inner.value)
        if receiver != alias:
            raise UnrecognizedShape(f"unexpected call in batch block: {ast.unparse(inner)}")
        changes.append(_column_change(method, inner.value.args, _keywords(inner.value), table))
    return [AlterTable(name=table, changes=tuple(changes))]


def _parse_execute(call: ast.Call) -> list[Operation]:
    sql = _sql_text(_arg(call, 0, "sqltext"))

    m = CREATE_TYPE_RE.match(sql)
    if m:
        values = tuple(v.replace("''", "'") for v in ENUM_VALUE_RE.findall(m.group(2)))
        return [CreateEnum(enum=EnumSpec(name=m.group(1), values=values))]
    m = ADD_VALUE_RE.match(sql)
    if m:
        return [AlterEnumAddValue(enum=m.group(1), value=m.group(2).replace("''", "'"))]
    m = DROP_TYPE_RE.match(sql)
    if m:
        return [DropEnum(name=m.group(1))]
    raise UnrecognizedShape(f"unsupported SQL fragment: {sql}")


def _parse_op_call(call: ast.Call) -> list[Operation]:
    receiver, method = _callee(call)
    if receiver != "op":
        raise UnrecognizedShape(f"unsupported call {ast.unparse(call)}")

    kwargs = _keywords(call)
    if method == "create_table":
        return _parse_create_table(call)
    if method == "drop_table":
        return [DropTable(name=_string(_arg(call, 0, "table_name")))]
    if method == "create_index":
        columns = _literal(_arg(call, 2, "columns"))
        if not isinstance(columns, (list, tuple)):
            raise UnrecognizedShape("create_index columns must be a list of names")
        index = IndexSpec(
            name=_string(_arg(call, 0, "index_name")),
            table=_string(_arg(call, 1, "table_name")),
            columns=tuple(columns),
            unique=bool(_literal(kwargs["unique"])) if "unique" in kwargs else False,
        )
        return [CreateIndex(index=index)]
    if method == "drop_index":
        return [DropIndex(name=_string(_arg(call, 0, "index_name")), table=_string(_arg(call, 1, "table_name")))]
    if method == "execute":
        return _parse_execute(call)
    if method in ("add_column", "drop_column", "alter_column", "drop_constraint"):
        table = _string(_arg(call, 1 if method == "drop_constraint" else 0, "table_name"))
        args = [a for i, a in enumerate(call.args) if i != (1 if method == "drop_constraint" else 0)]
        return [AlterTable(name=table, changes=(_column_change(method, args, kwargs, table),))]
    if method == "create_foreign_key":
        table = _string(_arg(call, 1, "source_table"))
        args = [call.args[0]] + call.args[2:]
        return [AlterTable(name=table, changes=(_column_change(method, args, kwargs, table),))]
    raise UnrecognizedShape(f"unsupported migration operation op.{method}")


def _parse_statement(stmt: ast.stmt) -> list[Operation]:
    if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Call):
        return _parse_op_call(stmt.value)
    if isinstance(stmt, ast.With):
        return _parse_with(stmt)
    raise UnrecognizedShape(f"unsupported statement {type(stmt).__name__}")


def _is_filler(stmt: ast.stmt) -> bool:
    if isinstance(stmt, ast.Pass):
        return True
    return isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str)


def _unparseable(source: str, reason: str, strict: bool) -> list[Operation]:
    if strict:
        raise HistoryError(f"Unable to parse migration {source}: {reason}")
    logger.warning("Unable to parse migration %s: %s", source, reason)
    return []


def parse_migration(text: str, source: str = "<migration>", strict: bool = False) -> list[Operation]:
    """Recognize the operations in the upgrade() body of one migration."""
    try:
        tree = ast.parse(text, filename=source)
    except SyntaxError as exc:
        return _unparseable(source, f"syntax error: {exc.msg} (line {exc.lineno})", strict)

    upgrade = next(
        (n for n in tree.body if isinstance(n, ast.FunctionDef) and n.name == "upgrade"),
        None,
    )
    if upgrade is None:
        return _unparseable(source, "no upgrade() function", strict)

    operations: list[Operation] = []
    for stmt in upgrade.body:
        if _is_filler(stmt):
            continue
        try:
            operations.extend(_parse_statement(stmt))
        except UnrecognizedShape as exc:
            if strict:
                raise HistoryError(f"Unable to parse migration code in {source} (line {stmt.lineno}): {exc}") from exc
            logger.warning(
                "Unable to parse migration code in %s (line %d): %s\n%s", source, stmt.lineno, exc, ast.unparse(stmt)
            )
    return operations


def read_migrations(sources: Iterable[MigrationSource], strict: bool = False) -> list[Operation]:
    operations: list[Operation] = []
    for source in sources:
        parsed = parse_migration(source.text, str(source.path), strict=strict)
        logger.debug("Read %d operations from %s", len(parsed), source.path)
        operations.extend(parsed)
    return operations


# Replay


def _table(state: SchemaState, name: str, op: Operation) -> TableSpec:
    table = state.tables.get(name)
    if table is None:
        raise HistoryError(f"{type(op).__name__} references unknown table {name}: {sorted(state.tables)}")
    return table


def _check_column_targets(state: SchemaState, table: str, column: str, spec: ColumnSpec) -> None:
    if spec.references and spec.references != table and spec.references not in state.tables:
        raise HistoryError(f"Column {table}.{column} references unknown table {spec.references}")
    if spec.is_enum() and spec.type not in state.enums:
        raise HistoryError(f"Column {table}.{column} has unknown enum type {spec.type}")


def _apply_column_change(state: SchemaState, table: TableSpec, change: ColumnChange) -> None:
    if change.action == "add":
        if change.column in table.columns:
            raise HistoryError(f"Column {table.name}.{change.column} added twice")
        _check_column_targets(state, table.name, change.column, change.spec)
        table.columns[change.column] = dataclasses.replace(change.spec)
    elif change.action == "remove":
        if change.column not in table.columns:
            raise HistoryError(f"Trying to remove unknown column {table.name}.{change.column}")
        del table.columns[change.column]
        # Dropping a column drops every index covering it.
        for name in [n for n, idx in table.indices.items() if change.column in idx.columns]:
            del table.indices[name]
    elif change.action == "modify":
        if change.column not in table.columns:
            raise HistoryError(f"Trying to modify unknown column {table.name}.{change.column}")
        spec = dataclasses.replace(table.columns[change.column], **change.change_map())
        _check_column_targets(state, table.name, change.column, spec)
        table.columns[change.column] = spec
    else:
        raise HistoryError(f"Unknown column change {change.action} on {table.name}.{change.column}")


def apply_operation(state: SchemaState, op: Operation) -> None:
    if isinstance(op, CreateTable):
        if op.name in state.tables:
            raise HistoryError(f"Table {op.name} created twice")
        for name, spec in op.table.columns.items():
            _check_column_targets(state, op.name, name, spec)
        state.tables[op.name] = TableSpec(
            name=op.name,
            columns={n: dataclasses.replace(c) for n, c in op.table.columns.items()},
            indices={n: dataclasses.replace(i) for n, i in op.table.indices.items()},
        )
    elif isinstance(op, DropTable):
        _table(state, op.name, op)
        del state.tables[op.name]
    elif isinstance(op, AlterTable):
        table = _table(state, op.name, op)
        for change in op.changes:
            _apply_column_change(state, table, change)
    elif isinstance(op, CreateIndex):
        table = _table(state, op.index.table, op)
        if op.index.name in table.indices:
            raise HistoryError(f"Index {op.index.name} created twice on {table.name}")
        missing = [c for c in op.index.columns if c not in table.columns]
        if missing:
            raise HistoryError(f"Index {op.index.name} covers unknown columns of {table.name}: {missing}")
        table.indices[op.index.name] = dataclasses.replace(op.index)
    elif isinstance(op, DropIndex):
        table = _table(state, op.table, op)
        if op.name not in table.indices:
            raise HistoryError(f"Trying to drop unknown index {op.name} on {table.name}")
        del table.indices[op.name]
    elif isinstance(op, CreateEnum):
        if op.enum.name in state.enums:
            raise HistoryError(f"Enum {op.enum.name} created twice")
        state.enums[op.enum.name] = dataclasses.replace(op.enum)
    elif isinstance(op, AlterEnumAddValue):
        enum = state.enums.get(op.enum)
        if enum is None:
            raise HistoryError(f"Trying to add value {op.value!r} to unknown enum {op.enum}")
        if op.value in enum.values:
            raise HistoryError(f"Enum {op.enum} already has value {op.value!r}")
        enum.values = enum.values + (op.value,)
    elif isinstance(op, DropEnum):
        if op.name not in state.enums:
            raise HistoryError(f"Trying to drop unknown enum {op.name}")
        del state.enums[op.name]
    else:
        raise HistoryError(f"Unknown operation {op!r}")


def reduce_operations(operations: Iterable[Operation], state: SchemaState | None = None) -> SchemaState:
    """Fold operations left to right into a schema state."""
    state = state if state is not None else SchemaState()
    for op in operations:
        apply_operation(state, op)
    return state


def replay_history(sources: list[MigrationSource], strict: bool = False) -> SchemaState:
    check_contiguity(sources)
    return reduce_operations(read_migrations(sources, strict=strict))
