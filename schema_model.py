"""Schema model: desired/existing state types and the entity schema builder."""

from __future__ import annotations

import dataclasses
import importlib
from pathlib import Path
from typing import Any, Iterable

import yaml

COLUMN_TYPES = ("uuid", "string", "integer", "float", "boolean", "datetime", "date", "decimal", "json")
ATTRIBUTE_KINDS = ("id",) + COLUMN_TYPES
ON_DELETE_POLICIES = ("nothing", "cascade")
# Appended to every entity table.
TIMESTAMP_COLUMNS = ("inserted_at", "updated_at")


class SchemaError(ValueError):
    """Raised when the entity schema cannot be turned into a table model."""


@dataclasses.dataclass
class ColumnSpec:
    type: str
    nullable: bool = True
    default: str | None = None
    # Uniqueness is persisted through IndexSpec, never compared column-wise.
    unique: bool = dataclasses.field(default=False, compare=False)
    references: str | None = None
    on_delete: str = "nothing"
    primary_key: bool = False

    def is_enum(self) -> bool:
        return self.type not in COLUMN_TYPES


@dataclasses.dataclass
class IndexSpec:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = True


@dataclasses.dataclass
class TableSpec:
    name: str
    columns: dict[str, ColumnSpec] = dataclasses.field(default_factory=dict)
    indices: dict[str, IndexSpec] = dataclasses.field(default_factory=dict)

    def references(self) -> list[str]:
        """Tables referenced by this table's foreign keys, in column order."""
        refs: list[str] = []
        for col in self.columns.values():
            if col.references and col.references not in refs:
                refs.append(col.references)
        return refs


@dataclasses.dataclass
class EnumSpec:
    name: str
    values: tuple[str, ...]


@dataclasses.dataclass
class SchemaState:
    tables: dict[str, TableSpec] = dataclasses.field(default_factory=dict)
    enums: dict[str, EnumSpec] = dataclasses.field(default_factory=dict)


# Entity schema input, as produced by the DSL compiler.


@dataclasses.dataclass(frozen=True)
class Attribute:
    name: str
    kind: str
    optional: bool = False
    nullable: bool | None = None
    unique: bool = False
    default: Any = None
    one_of: tuple[str, ...] | str | None = None
    virtual: bool = False


@dataclasses.dataclass(frozen=True)
class Relation:
    name: str
    kind: str
    target: str
    optional: bool = False
    on_delete: str = "nothing"


@dataclasses.dataclass(frozen=True)
class Key:
    fields: tuple[str, ...]
    unique: bool = True


@dataclasses.dataclass(frozen=True)
class Entity:
    name: str
    table: str
    attributes: tuple[Attribute, ...] = ()
    relations: tuple[Relation, ...] = ()
    keys: tuple[Key, ...] = ()
    scope: tuple[str, ...] = ()
    virtual: bool = False


@dataclasses.dataclass(frozen=True)
class Schema:
    entities: tuple[Entity, ...] = ()
    enums: tuple[tuple[str, tuple[str, ...]], ...] = ()

    def enum_map(self) -> dict[str, tuple[str, ...]]:
        return dict(self.enums)


class SchemaBuilder:
    """Collects entity and enum declarations and assembles one immutable Schema."""

    def __init__(self) -> None:
        self._entities: list[Entity] = []
        self._enums: dict[str, tuple[str, ...]] = {}

    def enum(self, name: str, values: Iterable[Any]) -> SchemaBuilder:
        if name in self._enums:
            raise SchemaError(f"Enum {name} declared twice")
        self._enums[name] = tuple(str(v) for v in values)
        return self

    def entity(
        self,
        name: str,
        attributes: Iterable[Attribute] = (),
        relations: Iterable[Relation] = (),
        keys: Iterable[Key | Iterable[str]] = (),
        table: str | None = None,
        scope: Iterable[str] = (),
        virtual: bool = False,
    ) -> SchemaBuilder:
        if any(e.name == name for e in self._entities):
            raise SchemaError(f"Entity {name} declared twice")
        normalized_keys = tuple(k if isinstance(k, Key) else Key(fields=tuple(k)) for k in keys)
        self._entities.append(
            Entity(
                name=name,
                table=table or f"{name}s",
                attributes=tuple(attributes),
                relations=tuple(relations),
                keys=normalized_keys,
                scope=tuple(scope),
                virtual=virtual,
            )
        )
        return self

    def build(self) -> Schema:
        return Schema(entities=tuple(self._entities), enums=tuple(self._enums.items()))


def normalize_default(value: Any) -> str | None:
    """Defaults are compared as strings: symbols and numbers are stringified."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generated_enum_name(entity: Entity, attr: Attribute) -> str:
    return f"{entity.name}_{attr.name}s"


def relation_column(name: str) -> str:
    return f"{name}_id"


def index_name(table: str, columns: Iterable[str], unique: bool = True) -> str:
    suffix = "key" if unique else "index"
    return f"{table}_{'_'.join(columns)}_{suffix}"


def _with_id(entity: Entity) -> tuple[Attribute, ...]:
    if any(a.name == "id" for a in entity.attributes):
        return entity.attributes
    return (Attribute(name="id", kind="id"),) + entity.attributes


def _column_from_attribute(
    entity: Entity,
    attr: Attribute,
    enums: dict[str, tuple[str, ...]],
    state: SchemaState,
) -> ColumnSpec:
    if attr.kind not in ATTRIBUTE_KINDS:
        raise SchemaError(f"Attribute {entity.name}.{attr.name} has unsupported kind {attr.kind!r}")

    col_type = "uuid" if attr.kind == "id" else attr.kind
    if isinstance(attr.one_of, str):
        if attr.one_of not in enums:
            raise SchemaError(f"Attribute {entity.name}.{attr.name} references unknown enum {attr.one_of}")
        col_type = attr.one_of
    elif attr.one_of is not None:
        col_type = generated_enum_name(entity, attr)
        if col_type in state.enums:
            raise SchemaError(f"Generated enum {col_type} clashes with an existing enum")
        state.enums[col_type] = EnumSpec(name=col_type, values=tuple(str(v) for v in attr.one_of))

    nullable = attr.optional if attr.nullable is None else attr.nullable
    return ColumnSpec(
        type=col_type,
        nullable=nullable and attr.name != "id",
        default=normalize_default(attr.default),
        unique=attr.unique,
        primary_key=attr.name == "id",
    )


def _resolve_relation(entity: Entity, name: str) -> Relation:
    for rel in entity.relations:
        if rel.name == name:
            return rel
    raise SchemaError(f"Entity {entity.name} has no relation {name}")


def _parent_column(entity: Entity, name: str, usage: str) -> str:
    rel = _resolve_relation(entity, name)
    if rel.kind != "belongs_to":
        raise SchemaError(f"{usage} {entity.name}.{name} must be a belongs_to relation, not {rel.kind}")
    return relation_column(rel.name)


def _key_columns(entity: Entity, fields: Iterable[str]) -> list[str]:
    attrs = {a.name: a for a in _with_id(entity)}
    columns: list[str] = []
    for field in fields:
        attr = attrs.get(field)
        if attr is None:
            columns.append(_parent_column(entity, field, "Key field"))
        elif attr.virtual:
            raise SchemaError(f"Key field {entity.name}.{field} is virtual and has no column")
        else:
            columns.append(field)
    return columns


def _add_index(table: TableSpec, index: IndexSpec) -> None:
    current = table.indices.get(index.name)
    if current is not None and current != index:
        raise SchemaError(
            f"Index name {index.name} is ambiguous: {list(current.columns)} and {list(index.columns)}"
        )
    table.indices[index.name] = index


def _table_from_entity(
    entity: Entity,
    tables_by_entity: dict[str, str],
    enums: dict[str, tuple[str, ...]],
    state: SchemaState,
) -> TableSpec:
    table = TableSpec(name=entity.table)

    for attr in _with_id(entity):
        if attr.virtual:
            continue
        table.columns[attr.name] = _column_from_attribute(entity, attr, enums, state)

    for rel in entity.relations:
        if rel.kind not in ("belongs_to", "has_many"):
            raise SchemaError(f"Relation {entity.name}.{rel.name} has unsupported kind {rel.kind!r}")
        target_table = tables_by_entity.get(rel.target)
        if target_table is None:
            raise SchemaError(
                f"Could not resolve entity {rel.target} for relation {entity.name}.{rel.name}: "
                f"{sorted(tables_by_entity)}"
            )
        if rel.kind != "belongs_to":
            continue
        if rel.on_delete not in ON_DELETE_POLICIES:
            raise SchemaError(f"Relation {entity.name}.{rel.name} has unsupported on_delete {rel.on_delete!r}")
        table.columns[relation_column(rel.name)] = ColumnSpec(
            type="uuid",
            nullable=rel.optional,
            references=target_table,
            on_delete=rel.on_delete,
        )

    for name in TIMESTAMP_COLUMNS:
        if name not in table.columns:
            table.columns[name] = ColumnSpec(type="datetime", nullable=False)

    scope_columns = [_parent_column(entity, r, "Scope") for r in entity.scope]
    for attr in entity.attributes:
        if not attr.unique or attr.virtual:
            continue
        columns = scope_columns + [attr.name]
        name = index_name(table.name, columns)
        _add_index(table, IndexSpec(name=name, table=table.name, columns=tuple(columns)))

    for key in entity.keys:
        columns = _key_columns(entity, key.fields)
        name = index_name(table.name, columns, unique=key.unique)
        _add_index(table, IndexSpec(name=name, table=table.name, columns=tuple(columns), unique=key.unique))

    return table


def build_desired_state(schema: Schema) -> SchemaState:
    """Turn the entity schema into the desired tables and enums."""
    enums = schema.enum_map()
    state = SchemaState(enums={name: EnumSpec(name=name, values=values) for name, values in enums.items()})

    persisted = [e for e in schema.entities if not e.virtual]
    tables_by_entity = {e.name: e.table for e in persisted}

    for entity in persisted:
        if entity.table in state.tables:
            raise SchemaError(f"Table {entity.table} is mapped by more than one entity")
        state.tables[entity.table] = _table_from_entity(entity, tables_by_entity, enums, state)

    return state


# YAML schema documents.


def _split_options(raw: dict, fixed: Iterable[str]) -> dict:
    opts = dict(raw.get("options") or {})
    for key, value in raw.items():
        if key not in fixed and key != "options":
            opts[key] = value
    for modifier in opts.pop("modifiers", []) or []:
        opts[modifier] = True
    return opts


def _attribute_from_dict(raw: dict) -> Attribute:
    opts = _split_options(raw, ("name", "kind"))
    one_of = opts.get("one_of")
    if isinstance(one_of, list):
        one_of = tuple(str(v) for v in one_of)
    nullable = opts.get("nullable", opts.get("null"))
    return Attribute(
        name=str(raw["name"]),
        kind=str(raw.get("kind", "string")),
        optional=bool(opts.get("optional", False)),
        nullable=None if nullable is None else bool(nullable),
        unique=bool(opts.get("unique", False)),
        default=opts.get("default"),
        one_of=one_of,
        virtual=bool(opts.get("virtual", False)),
    )


def _relation_from_dict(raw: dict) -> Relation:
    opts = _split_options(raw, ("name", "kind", "target"))
    name = str(raw["name"])
    return Relation(
        name=name,
        kind=str(raw.get("kind", "belongs_to")),
        target=str(raw.get("target", name)),
        optional=bool(opts.get("optional", False)),
        on_delete=str(opts.get("on_delete", "nothing")),
    )


def _key_from_yaml(raw: Any) -> Key:
    if isinstance(raw, dict):
        return Key(fields=tuple(raw["fields"]), unique=bool(raw.get("unique", True)))
    return Key(fields=tuple(raw))


def schema_from_dict(doc: dict) -> Schema:
    builder = SchemaBuilder()
    for name, values in (doc.get("enums") or {}).items():
        builder.enum(str(name), values)
    for raw in doc.get("entities") or []:
        if "name" not in raw:
            raise SchemaError(f"Entity declaration without a name: {raw}")
        builder.entity(
            str(raw["name"]),
            attributes=[_attribute_from_dict(a) for a in raw.get("attributes") or []],
            relations=[_relation_from_dict(r) for r in raw.get("relations") or []],
            keys=[_key_from_yaml(k) for k in raw.get("keys") or []],
            table=raw.get("table"),
            scope=raw.get("scope") or (),
            virtual=bool(raw.get("virtual", False)),
        )
    return builder.build()


def load_schema(path: Path) -> Schema:
    doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(doc, dict):
        raise SchemaError(f"Schema document {path} must be a mapping")
    return schema_from_dict(doc)


def resolve_schema(source: Schema | str | Path) -> Schema:
    """Accept a Schema, a YAML file, or an importable module exposing SCHEMA or schema()."""
    if isinstance(source, Schema):
        return source
    path = Path(source)
    if path.suffix in (".yaml", ".yml"):
        return load_schema(path)

    module = importlib.import_module(str(source))
    if hasattr(module, "SCHEMA"):
        schema = module.SCHEMA
    elif callable(getattr(module, "schema", None)):
        schema = module.schema()
    else:
        raise SchemaError(f"Module {source} defines neither SCHEMA nor schema()")
    if not isinstance(schema, Schema):
        raise SchemaError(f"Module {source} did not provide a Schema: {type(schema).__name__}")
    return schema
