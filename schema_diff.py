"""Diff desired against existing schema state and order the resulting operations."""

from __future__ import annotations

import logging
from typing import Callable

import networkx as nx

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
from schema_model import ColumnSpec, SchemaError, SchemaState, TableSpec

logger = logging.getLogger(__name__)

# Lower tiers run first.
TIERS: dict[type, int] = {
    CreateEnum: 0,
    AlterEnumAddValue: 0,
    CreateTable: 1,
    AlterTable: 2,
    CreateIndex: 3,
    DropIndex: 4,
    DropTable: 5,
    DropEnum: 6,
}


def _shared_tables(desired: SchemaState, existing: SchemaState) -> list[str]:
    return [name for name in desired.tables if name in existing.tables]


def with_new_enums(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    return [CreateEnum(enum=enum) for name, enum in desired.enums.items() if name not in existing.enums]


def with_new_enum_values(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name, enum in desired.enums.items():
        current = existing.enums.get(name)
        if current is None:
            continue
        if enum.values[: len(current.values)] != current.values:
            raise SchemaError(
                f"Values of enum {name} can only be appended: existing {list(current.values)}, "
                f"desired {list(enum.values)}"
            )
        ops.extend(AlterEnumAddValue(enum=name, value=v) for v in enum.values[len(current.values) :])
    return ops


def with_new_tables(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    return [
        CreateTable(table=TableSpec(name=name, columns=dict(table.columns)))
        for name, table in desired.tables.items()
        if name not in existing.tables
    ]


def with_new_indices(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name, table in desired.tables.items():
        current = existing.tables[name].indices if name in existing.tables else {}
        ops.extend(CreateIndex(index=idx) for idx_name, idx in table.indices.items() if current.get(idx_name) != idx)
    return ops


def with_new_columns(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name in _shared_tables(desired, existing):
        current = existing.tables[name].columns
        added = [
            ColumnChange.add(col, spec) for col, spec in desired.tables[name].columns.items() if col not in current
        ]
        if added:
            ops.append(AlterTable(name=name, changes=tuple(added)))
    return ops


def column_modification(column: str, old: ColumnSpec, new: ColumnSpec) -> ColumnChange | None:
    changes: dict = {}
    cast = False
    if old.type != new.type:
        changes["type"] = new.type
        cast = new.type != "string"
    if old.nullable != new.nullable:
        changes["nullable"] = new.nullable
    if old.default != new.default:
        changes["default"] = new.default
    if old.references != new.references or old.on_delete != new.on_delete:
        # The foreign key constraint is replaced as a whole.
        changes["references"] = new.references
        changes["nullable"] = new.nullable
        changes["on_delete"] = new.on_delete
    if not changes:
        return None
    return ColumnChange.modify(column, changes, cast=cast, previous=old)


def with_modified_columns(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name in _shared_tables(desired, existing):
        current = existing.tables[name].columns
        modified = []
        for col, spec in desired.tables[name].columns.items():
            if col not in current:
                continue
            change = column_modification(col, current[col], spec)
            if change:
                modified.append(change)
        if modified:
            ops.append(AlterTable(name=name, changes=tuple(modified)))
    return ops


def without_old_indices(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name in _shared_tables(desired, existing):
        wanted = desired.tables[name].indices
        columns = desired.tables[name].columns
        for idx_name, idx in existing.tables[name].indices.items():
            if wanted.get(idx_name) == idx:
                continue
            # Dropping a column drops the indices covering it.
            if any(col not in columns for col in idx.columns):
                continue
            ops.append(DropIndex(name=idx_name, table=name))
    return ops


def without_old_columns(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    ops: list[Operation] = []
    for name in _shared_tables(desired, existing):
        wanted = desired.tables[name].columns
        removed = [ColumnChange.remove(col) for col in existing.tables[name].columns if col not in wanted]
        if removed:
            ops.append(AlterTable(name=name, changes=tuple(removed)))
    return ops


def without_old_tables(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    return [
        DropTable(name=name, depends_on=tuple(table.references()))
        for name, table in existing.tables.items()
        if name not in desired.tables
    ]


def without_old_enums(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    return [DropEnum(name=name) for name in existing.enums if name not in desired.enums]


DIFF_STEPS: list[Callable[[SchemaState, SchemaState], list[Operation]]] = [
    with_new_enums,
    with_new_enum_values,
    with_new_tables,
    with_new_indices,
    with_new_columns,
    with_modified_columns,
    without_old_indices,
    without_old_columns,
    without_old_tables,
    without_old_enums,
]


def diff_states(desired: SchemaState, existing: SchemaState) -> list[Operation]:
    """Operations that take `existing` to `desired`, in a fixed, stable emission order."""
    ops: list[Operation] = []
    for step in DIFF_STEPS:
        found = step(desired, existing)
        if found:
            logger.debug("%s: %d operations", step.__name__, len(found))
        ops.extend(found)
    return ops


def _topological_rank(graph: nx.DiGraph, position: dict[str, int]) -> dict[str, int]:
    try:
        order = list(nx.lexicographical_topological_sort(graph, key=position.__getitem__))
    except nx.NetworkXUnfeasible as exc:
        cycle = " -> ".join(src for src, _ in nx.find_cycle(graph))
        raise SchemaError(f"Circular foreign key dependency between tables: {cycle}") from exc
    return {name: rank for rank, name in enumerate(order)}


def tables_graph(tables: dict[str, list[str]]) -> nx.DiGraph:
    """Edges point from a table to every table it references."""
    graph = nx.DiGraph()
    graph.add_nodes_from(tables)
    for name, refs in tables.items():
        for ref in refs:
            if ref != name and ref in tables:
                graph.add_edge(name, ref)
    return graph


def sort_operations(operations: list[Operation]) -> list[Operation]:
    """Order operations so that everything exists before it is depended upon.

    Tiers: enums, created tables (referenced tables first), table alterations,
    index creation, index drops, dropped tables (dependents first), enum drops.
    An index being redefined under the same name is dropped just before the
    index creations. Ties keep emission order.
    """
    recreated = {(op.index.table, op.index.name) for op in operations if isinstance(op, CreateIndex)}
    created = {op.name: op.table.references() for op in operations if isinstance(op, CreateTable)}
    dropped = {op.name: list(op.depends_on) for op in operations if isinstance(op, DropTable)}
    position = {name: i for i, name in enumerate(list(created) + list(dropped))}

    create_rank = _topological_rank(tables_graph(created).reverse(copy=True), position)
    drop_rank = _topological_rank(tables_graph(dropped), position)

    def sort_key(item: tuple[int, Operation]) -> tuple[int, int, int]:
        index, op = item
        if isinstance(op, CreateTable):
            rank = create_rank[op.name]
        elif isinstance(op, DropTable):
            rank = drop_rank[op.name]
        elif isinstance(op, DropIndex) and (op.table, op.name) in recreated:
            return TIERS[CreateIndex], -1, index
        else:
            rank = 0
        return TIERS[type(op)], rank, index

    return [op for _, op in sorted(enumerate(operations), key=sort_key)]
