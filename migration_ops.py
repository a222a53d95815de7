"""DDL operations computed by the diff engine and replayed from migration history."""

from __future__ import annotations

import dataclasses
from typing import Any, Union

from schema_model import ColumnSpec, EnumSpec, IndexSpec, TableSpec

# Keys a column modification may carry.
MODIFIABLE_KEYS = ("type", "nullable", "default", "references", "on_delete")


@dataclasses.dataclass(frozen=True)
class ColumnChange:
    action: str  # "add", "remove" or "modify"
    column: str
    spec: ColumnSpec | None = None
    changes: tuple[tuple[str, Any], ...] = ()
    cast: bool = False
    # Column definition before a modification, when known. Rendering only.
    previous: ColumnSpec | None = dataclasses.field(default=None, compare=False)

    @classmethod
    def add(cls, column: str, spec: ColumnSpec) -> ColumnChange:
        return cls(action="add", column=column, spec=spec)

    @classmethod
    def remove(cls, column: str) -> ColumnChange:
        return cls(action="remove", column=column)

    @classmethod
    def modify(
        cls,
        column: str,
        changes: dict[str, Any],
        cast: bool = False,
        previous: ColumnSpec | None = None,
    ) -> ColumnChange:
        unknown = set(changes) - set(MODIFIABLE_KEYS)
        if unknown:
            raise ValueError(f"Unsupported column modification keys for {column}: {sorted(unknown)}")
        return cls(action="modify", column=column, changes=tuple(changes.items()), cast=cast, previous=previous)

    def change_map(self) -> dict[str, Any]:
        return dict(self.changes)


@dataclasses.dataclass(frozen=True)
class CreateTable:
    table: TableSpec

    @property
    def name(self) -> str:
        return self.table.name


@dataclasses.dataclass(frozen=True)
class DropTable:
    name: str
    # Tables the dropped table referenced; used to drop dependents first.
    depends_on: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class AlterTable:
    name: str
    changes: tuple[ColumnChange, ...]


@dataclasses.dataclass(frozen=True)
class CreateIndex:
    index: IndexSpec


@dataclasses.dataclass(frozen=True)
class DropIndex:
    name: str
    table: str


@dataclasses.dataclass(frozen=True)
class CreateEnum:
    enum: EnumSpec


@dataclasses.dataclass(frozen=True)
class DropEnum:
    name: str


@dataclasses.dataclass(frozen=True)
class AlterEnumAddValue:
    enum: str
    value: str


Operation = Union[
    CreateTable,
    DropTable,
    AlterTable,
    CreateIndex,
    DropIndex,
    CreateEnum,
    DropEnum,
    AlterEnumAddValue,
]
