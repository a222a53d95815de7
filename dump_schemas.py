#!/usr/bin/env python3
"""Dump the schema state replayed from migration history (or built from an entity schema) as YAML.

Usage:
    python dump_schemas.py [--migrations-dir DIR] [--schema SCHEMA] [--out FILE]
"""

import argparse
import sys
from pathlib import Path

import yaml

from migration_history import discover_migrations, replay_history
from schema_model import SchemaState, build_desired_state, resolve_schema

DEFAULT_MIGRATIONS_DIR = Path("migrations/versions")


def column_to_dict(spec) -> dict:
    out: dict = {"type": spec.type, "nullable": spec.nullable}
    if spec.primary_key:
        out["primary_key"] = True
    if spec.default is not None:
        out["default"] = spec.default
    if spec.references:
        out["references"] = spec.references
        out["on_delete"] = spec.on_delete
    return out


def state_to_dict(state: SchemaState) -> dict:
    tables: dict = {}
    for name in sorted(state.tables):
        table = state.tables[name]
        entry: dict = {"columns": {col: column_to_dict(spec) for col, spec in table.columns.items()}}
        if table.indices:
            entry["indices"] = {
                idx.name: {"columns": list(idx.columns), "unique": idx.unique}
                for idx in sorted(table.indices.values(), key=lambda i: i.name)
            }
        tables[name] = entry
    enums = {name: list(state.enums[name].values) for name in sorted(state.enums)}
    return {"enums": enums, "tables": tables}


def dump_state(state: SchemaState) -> str:
    return yaml.safe_dump(state_to_dict(state), sort_keys=False, default_flow_style=False)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Dump replayed or desired schema state as YAML")
    parser.add_argument(
        "--migrations-dir",
        default=str(DEFAULT_MIGRATIONS_DIR),
        help=f"Generated migrations directory (default: {DEFAULT_MIGRATIONS_DIR})",
    )
    parser.add_argument("--schema", help="Dump the desired state of this schema instead of the history")
    parser.add_argument("--strict", action="store_true", help="Fail on migration code that cannot be parsed")
    parser.add_argument("--out", help="Output file (default: stdout)")
    args = parser.parse_args(argv)

    if args.schema:
        state = build_desired_state(resolve_schema(args.schema))
    else:
        sources = discover_migrations(Path(args.migrations_dir))
        print(f"  replaying {len(sources)} migrations from {args.migrations_dir}", file=sys.stderr)
        state = replay_history(sources, strict=args.strict)

    text = dump_state(state)
    if args.out:
        out_path = Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        print(f"\nTotal: {len(state.tables)} tables, {len(state.enums)} enums written to {out_path}", file=sys.stderr)
    else:
        sys.stdout.write(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
