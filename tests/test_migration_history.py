import tempfile
import unittest
from pathlib import Path

from migration_history import (
    HistoryError,
    MigrationSource,
    check_contiguity,
    discover_migrations,
    last_migration_version,
    parse_migration,
    reduce_operations,
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
)
from schema_model import ColumnSpec, EnumSpec, IndexSpec, SchemaState, TableSpec


def migration(body: str) -> str:
    lines = [
        '"""hand checked migration"""',
        "from alembic import op",
        "import sqlalchemy as sa",
        "from sqlalchemy.dialects import postgresql",
        "",
        "revision = '0001'",
        "down_revision = None",
        "",
        "",
        "def upgrade() -> None:",
    ]
    lines.extend(f"    {line}" if line else "" for line in body.strip("\n").splitlines())
    lines.extend(["", "", "def downgrade() -> None:", "    pass", ""])
    return "\n".join(lines)


CREATE_BLOGS = migration(
    """
op.execute("create type blog_statuss as enum ('draft', 'published')")
op.create_table(
    'blogs',
    sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
    sa.Column('name', sa.String(), nullable=False),
    sa.Column('status', postgresql.ENUM(name='blog_statuss', create_type=False), nullable=False, server_default='draft'),
    sa.Column('rank', sa.Integer, server_default=sa.text('0')),
)
op.create_index('blogs_name_key', 'blogs', ['name'], unique=True)
"""
)

BLOGS_TABLE = TableSpec(
    name="blogs",
    columns={
        "id": ColumnSpec(type="uuid", nullable=False, primary_key=True),
        "name": ColumnSpec(type="string", nullable=False),
        "status": ColumnSpec(type="blog_statuss", nullable=False, default="draft"),
        "rank": ColumnSpec(type="integer", nullable=True, default="0"),
    },
)


def blogs_state() -> SchemaState:
    return reduce_operations(parse_migration(CREATE_BLOGS))


class TestParseMigration(unittest.TestCase):
    def test_create_table_enum_and_index(self) -> None:
        ops = parse_migration(CREATE_BLOGS)
        self.assertEqual(
            ops,
            [
                CreateEnum(enum=EnumSpec(name="blog_statuss", values=("draft", "published"))),
                CreateTable(table=BLOGS_TABLE),
                CreateIndex(index=IndexSpec(name="blogs_name_key", table="blogs", columns=("name",), unique=True)),
            ],
        )

    def test_foreign_key_columns(self) -> None:
        ops = parse_migration(
            migration(
                """
op.create_table(
    'comments',
    sa.Column('id', sa.Uuid(), primary_key=True),
    sa.Column('blog_id', sa.Uuid(), sa.ForeignKey('blogs.id', name='comments_blog_id_fkey', ondelete='CASCADE'), nullable=False),
    sa.Column('author_id', sa.Uuid(), sa.ForeignKey('users.id')),
)
"""
            )
        )
        columns = ops[0].table.columns
        self.assertEqual(columns["id"], ColumnSpec(type="uuid", nullable=False, primary_key=True))
        self.assertEqual(
            columns["blog_id"],
            ColumnSpec(type="uuid", nullable=False, references="blogs", on_delete="cascade"),
        )
        self.assertEqual(columns["author_id"], ColumnSpec(type="uuid", nullable=True, references="users"))

    def test_batch_alter_table_block(self) -> None:
        ops = parse_migration(
            migration(
                """
with op.batch_alter_table('blogs') as batch_op:
    batch_op.add_column(sa.Column('tags', sa.Text(), nullable=True))
    batch_op.drop_column('rank')
    batch_op.alter_column('name', nullable=True, existing_type=sa.String())
    batch_op.alter_column('status', type_=sa.String(), server_default=None)
"""
            )
        )
        self.assertEqual(len(ops), 1)
        alter = ops[0]
        self.assertIsInstance(alter, AlterTable)
        self.assertEqual(alter.name, "blogs")
        self.assertEqual([(c.action, c.column) for c in alter.changes], [
            ("add", "tags"),
            ("remove", "rank"),
            ("modify", "name"),
            ("modify", "status"),
        ])
        self.assertEqual(alter.changes[0].spec, ColumnSpec(type="string", nullable=True))
        self.assertEqual(alter.changes[2].change_map(), {"nullable": True})
        self.assertEqual(alter.changes[3].change_map(), {"type": "string", "default": None})

    def test_single_statement_column_operations(self) -> None:
        ops = parse_migration(
            migration(
                """
op.add_column('blogs', sa.Column('score', sa.Float(), nullable=True))
op.alter_column('blogs', 'score', type_=sa.Numeric(), postgresql_using='score::numeric')
op.drop_column('blogs', 'score')
"""
            )
        )
        self.assertEqual([type(op) for op in ops], [AlterTable, AlterTable, AlterTable])
        self.assertEqual(ops[1].changes[0].change_map(), {"type": "decimal"})
        self.assertTrue(ops[1].changes[0].cast)
        self.assertEqual(ops[2].changes, (ColumnChange.remove("score"),))

    def test_foreign_key_replacement(self) -> None:
        ops = parse_migration(
            migration(
                """
with op.batch_alter_table('comments') as batch_op:
    batch_op.drop_constraint('comments_blog_id_fkey', type_='foreignkey')
    batch_op.create_foreign_key('comments_blog_id_fkey', 'blogs', ['blog_id'], ['id'], ondelete='CASCADE')
"""
            )
        )
        changes = ops[0].changes
        self.assertEqual(changes[0].change_map(), {"references": None, "on_delete": "nothing"})
        self.assertEqual(changes[1].change_map(), {"references": "blogs", "on_delete": "cascade"})
        self.assertEqual({c.column for c in changes}, {"blog_id"})

    def test_enum_lifecycle_fragments(self) -> None:
        ops = parse_migration(
            migration(
                """
op.execute("CREATE TYPE moods AS ENUM ('happy', 'it''s complicated')")
with op.get_context().autocommit_block():
    op.execute("alter type moods add value 'sad'")
op.execute(sa.text("drop type if exists moods"))
"""
            )
        )
        self.assertEqual(
            ops,
            [
                CreateEnum(enum=EnumSpec(name="moods", values=("happy", "it's complicated"))),
                AlterEnumAddValue(enum="moods", value="sad"),
                DropEnum(name="moods"),
            ],
        )

    def test_drop_statements(self) -> None:
        ops = parse_migration(
            migration(
                """
op.drop_index('blogs_name_key', table_name='blogs', if_exists=True)
op.drop_table('blogs', if_exists=True)
"""
            )
        )
        self.assertEqual(ops, [DropIndex(name="blogs_name_key", table="blogs"), DropTable(name="blogs")])

    def test_unrecognized_statement_is_skipped_with_warning(self) -> None:
        text = migration(
            """
op.create_table('tags', sa.Column('id', sa.Uuid(), primary_key=True))
op.bulk_insert(tags_table, [{'id': 1}])
op.execute('update tags set id = id')
op.drop_table('legacy')
"""
        )
        with self.assertLogs("migration_history", level="WARNING") as logs:
            ops = parse_migration(text, "20260101000000_schemagen_v1.py")
        self.assertEqual([type(op) for op in ops], [CreateTable, DropTable])
        self.assertEqual(len(logs.output), 2)
        self.assertIn("20260101000000_schemagen_v1.py", logs.output[0])

    def test_unparseable_file_contributes_nothing(self) -> None:
        with self.assertLogs("migration_history", level="WARNING") as logs:
            ops = parse_migration("def upgrade(:\n    pass\n", "broken.py")
        self.assertEqual(ops, [])
        self.assertIn("broken.py", logs.output[0])

    def test_file_without_upgrade_contributes_nothing(self) -> None:
        with self.assertLogs("migration_history", level="WARNING"):
            self.assertEqual(parse_migration("x = 1\n"), [])

    def test_strict_mode_fails_on_unrecognized_code(self) -> None:
        with self.assertRaises(HistoryError):
            parse_migration(migration("op.bulk_insert(tags_table, [])"), strict=True)
        with self.assertRaises(HistoryError):
            parse_migration("def upgrade(:\n", strict=True)


class TestReduceOperations(unittest.TestCase):
    def test_replay_builds_state(self) -> None:
        state = blogs_state()
        self.assertEqual(list(state.tables), ["blogs"])
        self.assertEqual(state.tables["blogs"].columns, BLOGS_TABLE.columns)
        self.assertEqual(list(state.tables["blogs"].indices), ["blogs_name_key"])
        self.assertEqual(state.enums["blog_statuss"].values, ("draft", "published"))

    def test_modify_merges_changed_keys_only(self) -> None:
        state = blogs_state()
        reduce_operations([AlterTable("blogs", (ColumnChange.modify("status", {"nullable": True}),))], state)
        self.assertEqual(
            state.tables["blogs"].columns["status"],
            ColumnSpec(type="blog_statuss", nullable=True, default="draft"),
        )

    def test_replay_does_not_alias_operation_specs(self) -> None:
        ops = parse_migration(CREATE_BLOGS)
        state = reduce_operations(ops)
        reduce_operations([AlterTable("blogs", (ColumnChange.modify("name", {"nullable": True}),))], state)
        self.assertFalse(ops[1].table.columns["name"].nullable)

    def test_removing_a_column_drops_its_indices(self) -> None:
        state = blogs_state()
        reduce_operations([AlterTable("blogs", (ColumnChange.remove("name"),))], state)
        self.assertEqual(state.tables["blogs"].indices, {})
        with self.assertRaises(HistoryError):
            reduce_operations([DropIndex(name="blogs_name_key", table="blogs")], state)

    def test_index_redefined_under_same_name(self) -> None:
        state = blogs_state()
        redefined = IndexSpec(name="blogs_name_key", table="blogs", columns=("name", "rank"))
        reduce_operations([DropIndex(name="blogs_name_key", table="blogs"), CreateIndex(index=redefined)], state)
        self.assertEqual(state.tables["blogs"].indices, {"blogs_name_key": redefined})

    def test_references_to_known_tables(self) -> None:
        state = blogs_state()
        comments = TableSpec(
            name="comments",
            columns={
                "blog_id": ColumnSpec(type="uuid", references="blogs"),
                "parent_id": ColumnSpec(type="uuid", references="comments"),
                "status": ColumnSpec(type="blog_statuss"),
            },
        )
        reduce_operations([CreateTable(comments)], state)
        self.assertEqual(state.tables["comments"].columns["parent_id"].references, "comments")

    def test_enum_values_append(self) -> None:
        state = blogs_state()
        reduce_operations([AlterEnumAddValue("blog_statuss", "archived")], state)
        self.assertEqual(state.enums["blog_statuss"].values, ("draft", "published", "archived"))

    def test_drops(self) -> None:
        state = blogs_state()
        reduce_operations([DropTable("blogs"), DropEnum("blog_statuss")], state)
        self.assertEqual(state, SchemaState())

    def test_inconsistent_history_is_fatal(self) -> None:
        cases = [
            AlterTable("posts", (ColumnChange.remove("title"),)),
            AlterTable("blogs", (ColumnChange.remove("title"),)),
            AlterTable("blogs", (ColumnChange.modify("title", {"nullable": True}),)),
            AlterTable("blogs", (ColumnChange.add("name", ColumnSpec(type="string")),)),
            DropTable("posts"),
            CreateTable(TableSpec(name="blogs")),
            CreateIndex(IndexSpec(name="posts_title_key", table="posts", columns=("title",))),
            CreateIndex(IndexSpec(name="blogs_title_key", table="blogs", columns=("title",))),
            CreateIndex(IndexSpec(name="blogs_name_key", table="blogs", columns=("name",))),
            DropIndex(name="posts_title_key", table="posts"),
            DropIndex(name="blogs_title_key", table="blogs"),
            CreateTable(
                TableSpec(
                    name="comments",
                    columns={
                        "post_id": ColumnSpec(type="uuid", references="posts"),
                        "mood": ColumnSpec(type="moods"),
                    },
                )
            ),
            CreateTable(TableSpec(name="comments", columns={"post_id": ColumnSpec(type="uuid", references="posts")})),
            CreateTable(TableSpec(name="comments", columns={"mood": ColumnSpec(type="moods")})),
            AlterTable("blogs", (ColumnChange.add("owner_id", ColumnSpec(type="uuid", references="users")),)),
            AlterTable("blogs", (ColumnChange.add("mood", ColumnSpec(type="moods")),)),
            AlterTable("blogs", (ColumnChange.modify("name", {"references": "users", "on_delete": "cascade"}),)),
            AlterTable("blogs", (ColumnChange.modify("name", {"type": "moods"}),)),
            CreateEnum(EnumSpec(name="blog_statuss", values=("x",))),
            AlterEnumAddValue("moods", "sad"),
            AlterEnumAddValue("blog_statuss", "draft"),
            DropEnum("moods"),
        ]
        for op in cases:
            with self.subTest(op=op):
                with self.assertRaises(HistoryError):
                    reduce_operations([op], blogs_state())


class TestMigrationFiles(unittest.TestCase):
    def test_discovers_generated_migrations_in_timestamp_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "20260102000000_schemagen_v2.py").write_text("# v2\n", encoding="utf-8")
            (root / "20260101000000_schemagen_v1.py").write_text("# v1\n", encoding="utf-8")
            (root / "20260101120000_add_search_trigger.py").write_text("# manual\n", encoding="utf-8")
            (root / "README.md").write_text("notes\n", encoding="utf-8")

            sources = discover_migrations(root)

        self.assertEqual([s.version for s in sources], [1, 2])
        self.assertEqual(sources[0].text, "# v1\n")
        self.assertEqual(last_migration_version(sources), 2)

    def test_versions_order_within_one_timestamp(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            for version in range(1, 12):
                (root / f"20260101000000_schemagen_v{version}.py").write_text("", encoding="utf-8")

            sources = discover_migrations(root)

        self.assertEqual([s.version for s in sources], list(range(1, 12)))
        check_contiguity(sources)

    def test_lookalike_file_names_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "20260101000000_schemagen_v1.py").write_text("", encoding="utf-8")
            (root / "20260101000000_schemagen_v1_backup.py").write_text("", encoding="utf-8")
            (root / "20260102000000_schemagen_vnext.py").write_text("", encoding="utf-8")

            sources = discover_migrations(root)

        self.assertEqual([s.path.name for s in sources], ["20260101000000_schemagen_v1.py"])

    def test_missing_directory_has_no_history(self) -> None:
        self.assertEqual(discover_migrations(Path("/nonexistent/schemagen/migrations")), [])
        self.assertEqual(last_migration_version([]), 0)

    def test_version_gaps_are_fatal(self) -> None:
        sources = [
            MigrationSource(path=Path("20260101000000_schemagen_v1.py"), version=1, text=CREATE_BLOGS),
            MigrationSource(path=Path("20260103000000_schemagen_v3.py"), version=3, text=""),
        ]
        with self.assertRaises(HistoryError):
            check_contiguity(sources)
        with self.assertRaises(HistoryError):
            replay_history(sources)

    def test_replay_history(self) -> None:
        sources = [MigrationSource(path=Path("20260101000000_schemagen_v1.py"), version=1, text=CREATE_BLOGS)]
        self.assertEqual(replay_history(sources), blogs_state())


if __name__ == "__main__":
    unittest.main()
