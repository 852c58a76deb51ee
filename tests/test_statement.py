import unittest

from psycopg2 import sql

from psql_fluent.errors import ValidationError
from psql_fluent.hooks import HookPipeline, Operation
from psql_fluent.statement import Mode, Statement
from psql_fluent.surface import QueryResult
from tests.fakes import RecordingSurface, render

TABLE = "users"
USER_SCHEMA = {
    "account": "varchar(80) unique",
    "createdAt": "varchar(24) NOT NULL",
    "email": "varchar(160)",
    "age": "smallint CHECK (age > 0)",
}


def make_statement(surface=None, **kwargs) -> Statement:
    return Statement(TABLE, USER_SCHEMA, surface, **kwargs)


class TestConstruction(unittest.TestCase):
    def test_requires_table_and_schema(self):
        with self.assertRaises(ValidationError):
            Statement("", USER_SCHEMA)
        with self.assertRaises(ValidationError):
            Statement(TABLE, None)
        with self.assertRaises(ValidationError):
            Statement(TABLE, {})

    def test_mutators_chain(self):
        stmt = make_statement()
        self.assertIs(stmt.where("age", 1), stmt)
        self.assertIs(stmt.add_field("age"), stmt)
        self.assertIs(stmt.add_order_by("age"), stmt)
        self.assertIs(stmt.add_group_by("age"), stmt)
        self.assertIs(stmt.add_having("count(*) > 1"), stmt)
        self.assertIs(stmt.limit(1).offset(2).raw(False), stmt)

    def test_identifiers_are_composed(self):
        rendered = Statement('my"table', {'we"ird': "int"}).add_field('we"ird').render()
        self.assertIsInstance(rendered.text, sql.Composed)
        self.assertIn(sql.Identifier('my"table'), rendered.text.seq)
        self.assertEqual(render(rendered.text), 'SELECT "we""ird" FROM "my""table"')


class TestCreateRendering(unittest.TestCase):
    def test_create_table(self):
        stmt = make_statement()
        stmt.mode = Mode.CREATE
        self.assertEqual(
            render(stmt.render().text),
            'CREATE TABLE "users" ("account" varchar(80) unique,"createdAt" varchar(24) NOT NULL,'
            '"email" varchar(160),"age" smallint CHECK (age > 0))',
        )

    def test_create_is_deterministic_and_appends_constraints(self):
        def build():
            stmt = make_statement(constraints=["CHECK (age < 200)"])
            stmt.add_constraint("CHECK (age < 200)", "UNIQUE (account, email)")
            stmt.mode = "create"
            return stmt.render()

        first, second = build(), build()
        self.assertEqual(first, second)
        self.assertTrue(render(first.text).endswith('CHECK (age > 0),CHECK (age < 200),UNIQUE (account, email))'))
        self.assertEqual(first.params, [])


class TestSelectRendering(unittest.TestCase):
    def test_select_all(self):
        rendered = make_statement().render()
        self.assertEqual(render(rendered.text), 'SELECT * FROM "users"')
        self.assertEqual(rendered.params, [])

    def test_structured_conditions_precede_raw_fragments(self):
        stmt = (
            make_statement()
            .where("age > 18")
            .where({"account": ["a", "b"]})
            .where("email", "x@y.z")
        )
        rendered = stmt.render()
        self.assertEqual(
            render(rendered.text),
            'SELECT * FROM "users" WHERE "account" IN (%s,%s) AND "email" = %s AND age > 18',
        )
        self.assertEqual(rendered.params, ["a", "b", "x@y.z"])

    def test_where_overwrites_overlapping_keys(self):
        stmt = make_statement().where({"age": 1, "email": "e"}).where("age", 2)
        self.assertEqual(stmt.options.conditions, {"age": 2, "email": "e"})
        self.assertEqual(stmt.render().params, [2, "e"])

    def test_falsy_values_are_conditions_not_raw(self):
        stmt = make_statement().where("age", 0).where("email", "")
        self.assertEqual(stmt.options.raw_conditions, [])
        self.assertEqual(stmt.render().params, [0, ""])

    def test_null_empty_sequence_and_unknown_columns(self):
        rendered = (
            make_statement()
            .where({"email": None, "account": [], "users.id": 3})
            .render()
        )
        self.assertEqual(
            render(rendered.text),
            'SELECT * FROM "users" WHERE "email" IS NULL AND FALSE AND users.id = %s',
        )
        self.assertEqual(rendered.params, [3])

    def test_where_ignores_none_and_blank(self):
        stmt = make_statement().where(None).where({}).where("   ")
        self.assertEqual(render(stmt.render().text), 'SELECT * FROM "users"')

    def test_where_rejects_unsupported_argument(self):
        with self.assertRaises(ValidationError):
            make_statement().where(42)

    def test_fields_are_unique_and_quoted_when_known(self):
        stmt = make_statement().add_field("account", "age").add_field("account", "count(*)")
        self.assertEqual(stmt.options.fields, ["account", "age", "count(*)"])
        self.assertEqual(render(stmt.render().text), 'SELECT "account","age",count(*) FROM "users"')

    def test_descending_marker_is_stripped(self):
        stmt = make_statement().add_order_by("-age", "account", "lower(email)").add_order_by("account")
        self.assertEqual(
            render(stmt.render().text),
            'SELECT * FROM "users" ORDER BY "age" DESC,"account",lower(email)',
        )

    def test_descending_unknown_column_passes_through(self):
        stmt = make_statement().add_order_by("-id")
        self.assertEqual(render(stmt.render().text), 'SELECT * FROM "users" ORDER BY id DESC')

    def test_group_by_and_having(self):
        stmt = (
            make_statement()
            .add_field("age", "count(*)")
            .add_group_by("age")
            .add_having("count(*) > 1")
            .add_order_by("-age")
        )
        self.assertEqual(
            render(stmt.render().text),
            'SELECT "age",count(*) FROM "users" GROUP BY "age" HAVING count(*) > 1 ORDER BY "age" DESC',
        )

    def test_having_needs_group_by(self):
        stmt = make_statement().add_having("count(*) > 1")
        self.assertEqual(render(stmt.render().text), 'SELECT * FROM "users"')

    def test_limit_and_offset(self):
        stmt = make_statement().limit("10").offset(20)
        self.assertEqual(render(stmt.render().text), 'SELECT * FROM "users" LIMIT 10 OFFSET 20')

    def test_zero_limit_and_offset_are_omitted(self):
        stmt = make_statement().limit(0).offset(0)
        self.assertEqual(render(stmt.render().text), 'SELECT * FROM "users"')

    def test_invalid_limit_keeps_previous_value(self):
        stmt = make_statement().limit(5).limit("abc").limit("10abc").limit(None).limit(-3)
        stmt.offset(7).offset("x")
        self.assertEqual(stmt.options.limit, 5)
        self.assertEqual(stmt.options.offset, 7)


class TestWriteRendering(unittest.TestCase):
    def test_multi_row_insert_uses_first_row_columns(self):
        stmt = make_statement()
        stmt.mode = Mode.INSERT
        stmt.insert({"account": "a", "age": 1}, {"age": 2, "account": "b"})
        stmt.add_field("account", "createdAt")
        rendered = stmt.render()
        self.assertEqual(
            render(rendered.text),
            'INSERT INTO "users" ("account","age") VALUES (%s,%s),(%s,%s) RETURNING "account","createdAt"',
        )
        self.assertEqual(rendered.params, ["a", 1, "b", 2])

    def test_insert_rejects_mismatched_keys(self):
        stmt = make_statement()
        with self.assertRaisesRegex(ValidationError, "same keys"):
            stmt.insert({"account": "a"}, {"email": "x"})
        with self.assertRaises(ValidationError):
            stmt.insert({})

    def test_insert_copies_rows(self):
        row = {"account": "a"}
        stmt = make_statement().insert(row)
        stmt.options.inserts[0]["age"] = 3
        self.assertEqual(row, {"account": "a"})

    def test_insert_without_rows_renders_nothing(self):
        stmt = make_statement()
        stmt.mode = Mode.INSERT
        self.assertIsNone(stmt.render())

    def test_update_numbers_set_before_where(self):
        stmt = make_statement().where({"account": "a"}).where("age > 1")
        stmt.update({"age": 10}).update("email", "e")
        stmt.mode = Mode.UPDATE
        rendered = stmt.render()
        self.assertEqual(
            render(rendered.text),
            'UPDATE "users" SET "age" = %s,"email" = %s WHERE "account" = %s AND age > 1',
        )
        self.assertEqual(rendered.params, [10, "e", "a"])

    def test_update_without_data(self):
        stmt = make_statement().update(None).update({})
        stmt.mode = Mode.UPDATE
        self.assertIsNone(stmt.render())
        with self.assertRaises(ValidationError):
            stmt.update("age")

    def test_count(self):
        stmt = make_statement().where({"account": "a"})
        stmt.mode = Mode.COUNT
        self.assertEqual(render(stmt.render().text), 'SELECT count(*) FROM "users" WHERE "account" = %s')
        stmt.count_by("count(distinct age)")
        self.assertEqual(render(stmt.render().text), 'SELECT count(distinct age) FROM "users" WHERE "account" = %s')

    def test_index(self):
        stmt = make_statement().add_index("account", "age")
        stmt.mode = Mode.INDEX
        self.assertEqual(render(stmt.render().text), 'CREATE INDEX "users_account_age_idx" ON "users" ("account","age")')
        stmt.index_options(name="users_acc", unique=True)
        self.assertEqual(render(stmt.render().text), 'CREATE UNIQUE INDEX "users_acc" ON "users" ("account","age")')

    def test_index_on_qualified_table(self):
        stmt = Statement("public.users", USER_SCHEMA).add_index("lower(email)")
        stmt.mode = Mode.INDEX
        self.assertEqual(
            render(stmt.render().text),
            'CREATE INDEX "public_users_lower_email_idx" ON "public"."users" (lower(email))',
        )


class TestExecution(unittest.IsolatedAsyncioTestCase):
    async def test_executes_once(self):
        result = QueryResult(rows=[{"account": "a"}], row_count=1, command="SELECT")
        surface = RecordingSurface(result)
        stmt = make_statement(surface).where("account", "a")

        first = await stmt.execute()
        second = await stmt.execute()
        self.assertIs(first, result)
        self.assertIs(second, result)
        self.assertEqual(surface.calls, [('SELECT * FROM "users" WHERE "account" = %s', ["a"])])
        self.assertTrue(stmt.executed)

    async def test_failure_is_memoized(self):
        surface = RecordingSurface(RuntimeError("boom"))
        stmt = make_statement(surface)
        with self.assertRaisesRegex(RuntimeError, "boom"):
            await stmt.execute()
        with self.assertRaisesRegex(RuntimeError, "boom"):
            await stmt.execute()
        self.assertEqual(len(surface.calls), 1)

    async def test_frozen_after_execution(self):
        stmt = make_statement(RecordingSurface())
        await stmt.execute()
        with self.assertRaises(RuntimeError):
            stmt.where("age", 1)
        with self.assertRaises(RuntimeError):
            stmt.mode = Mode.COUNT

    async def test_changes_after_execute_are_refused(self):
        surface = RecordingSurface()
        stmt = make_statement(surface)
        pending = stmt.execute()
        with self.assertRaises(RuntimeError):
            stmt.where("age", 30)
        with self.assertRaises(RuntimeError):
            stmt.limit(5)
        await pending
        self.assertEqual(surface.calls, [('SELECT * FROM "users"', [])])

    async def test_execute_without_surface(self):
        with self.assertRaises(ValidationError):
            make_statement().execute()

    async def test_nothing_to_run_skips_surface(self):
        surface = RecordingSurface()
        stmt = make_statement(surface)
        stmt.mode = Mode.INSERT
        result = await stmt.execute()
        self.assertEqual(result, QueryResult.empty())
        self.assertEqual(surface.calls, [])

    async def test_stages_transform_unless_raw(self):
        result = QueryResult(rows=[{"age": 1}], row_count=1)
        stmt = make_statement(RecordingSurface(result))
        stmt.add_stage(lambda r: r.rows).add_stage(len)
        self.assertEqual(await stmt.execute(), 1)

        raw_stmt = make_statement(RecordingSurface(result)).add_stage(len).raw()
        self.assertIs(await raw_stmt.execute(), result)

    async def test_hooks_run_before_render_even_in_raw_mode(self):
        hooks = HookPipeline()
        seen = []

        def stamp(statement, table):
            seen.append(table)
            for row in statement.options.inserts:
                row["createdAt"] = "2024-01-01T00:00:00.000Z"

        hooks.register(Operation.INSERT, stamp)
        surface = RecordingSurface()
        stmt = make_statement(surface, hooks=hooks)
        stmt.mode = Mode.INSERT
        stmt.insert({"account": "a"}).add_stage(None, Operation.INSERT).raw()

        await stmt.execute()
        await stmt.execute()
        self.assertEqual(seen, ["users"])
        self.assertEqual(
            surface.calls,
            [('INSERT INTO "users" ("account","createdAt") VALUES (%s,%s)', ["a", "2024-01-01T00:00:00.000Z"])],
        )

    async def test_outer_stage_hooks_run_first(self):
        hooks = HookPipeline()
        order = []
        hooks.register("find", lambda stmt, table: order.append("find"))
        hooks.register("findOne", lambda stmt, table: order.append("findOne"))
        stmt = make_statement(RecordingSurface(), hooks=hooks)
        stmt.add_stage(None, Operation.FIND).add_stage(None, Operation.FIND_ONE)
        await stmt.execute()
        self.assertEqual(order, ["findOne", "find"])


if __name__ == "__main__":
    unittest.main()
