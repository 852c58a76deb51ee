import warnings
from typing import Any, Iterable, Mapping, Optional, Sequence

from psql_fluent.errors import CoercionWarning, ValidationError
from psql_fluent.hooks import HookPipeline, Operation
from psql_fluent.schema import SchemaRegistry
from psql_fluent.statement import Mode, Statement
from psql_fluent.surface import ExecutionSurface, QueryResult


def _split_fields(fields: Iterable[str] | str | None) -> list[str]:
	"""Accept "a b c", ["a", "b c"] or None."""
	if not fields:
		return []
	if isinstance(fields, str):
		fields = [fields]
	names: list[str] = []
	for item in fields:
		if item:
			names.extend(str(item).split())
	return names


def _plain_rows(result: QueryResult) -> list[dict]:
	return [dict(row) for row in (result.rows or [])]


def _first_or_none(rows: list[dict]) -> Optional[dict]:
	return rows[0] if rows else None


def _coerce_count(result: QueryResult) -> int:
	rows = result.rows or []
	value = next(iter(rows[0].values()), None) if rows else None
	try:
		return int(value)
	except (TypeError, ValueError):
		warnings.warn(f"Count aggregate {value!r} is not an integer; reporting 0.", CoercionWarning, stacklevel=2)
		return 0


class Table:
	"""
	Schema-bound CRUD verbs for one table.

	Every verb returns an unexecuted Statement that can still be refined
	before it is awaited:

		users = client.table("users")
		rows = await users.find({"account": ["a", "b"]}, "account age").add_order_by("account").execute()
		one = await users.find_one({"account": "a"}).execute()
		changed = await users.update({"account": "a"}, {"age": 22}).execute()

	Call `.raw()` on a statement to get the execution surface's QueryResult
	instead of the converted value.
	"""

	def __init__(
		self,
		surface: ExecutionSurface,
		name: str,
		*,
		schemas: Optional[SchemaRegistry] = None,
		hooks: Optional[HookPipeline] = None,
	):
		if surface is None or not name:
			raise ValidationError("surface and table name can not be empty.")
		self.surface = surface
		self.name = name
		self.schemas = schemas if schemas is not None else SchemaRegistry()
		self.hooks = hooks

	def __repr__(self) -> str:
		return f"<Table {self.name} on {self.surface!r}>"

	@property
	def schema(self) -> Optional[Mapping[str, str]]:
		entry = self.schemas.lookup(self.name)
		return entry.columns if entry else None

	@property
	def constraints(self) -> tuple[str, ...]:
		entry = self.schemas.lookup(self.name)
		return entry.constraints if entry else ()

	def statement(self) -> Statement:
		"""A fresh statement bound to this table, its schema and constraints."""
		entry = self.schemas.lookup(self.name)
		if entry is None:
			raise ValidationError(f"No schema registered for table '{self.name}'.")
		return Statement(
			self.name,
			entry.columns,
			self.surface,
			constraints=entry.constraints,
			hooks=self.hooks,
		)

	# ---------- DDL ----------
	def create(
		self,
		schema: Optional[Mapping[str, str]] = None,
		constraints: Optional[Sequence[str]] = None,
	) -> Statement:
		"""
		CREATE TABLE from the registered schema. Passing `schema` registers it
		first (replacing any earlier registration).
		"""
		if schema is not None:
			self.schemas.register(self.name, schema, constraints)
		elif constraints:
			raise ValidationError("constraints can only be given together with a schema.")
		statement = self.statement()
		statement.mode = Mode.CREATE
		return statement

	def create_index(
		self,
		columns: Sequence[str] | str,
		name: Optional[str] = None,
		unique: bool = False,
	) -> Statement:
		names = _split_fields(columns)
		if not names:
			raise ValidationError("columns must name at least one column.")
		statement = self.statement()
		statement.mode = Mode.INDEX
		statement.add_index(*names).index_options(name=name, unique=unique)
		return statement

	# ---------- Reads ----------
	def find(self, conditions: Mapping[str, Any] | str | None = None, *fields: str) -> Statement:
		statement = self.statement()
		statement.where(conditions)
		names = _split_fields(fields)
		if names:
			statement.add_field(*names)
		return statement.add_stage(_plain_rows, Operation.FIND)

	def find_one(self, conditions: Mapping[str, Any] | str | None = None, *fields: str) -> Statement:
		statement = self.find(conditions, *fields)
		statement.limit(1)
		return statement.add_stage(_first_or_none, Operation.FIND_ONE)

	def count(self, conditions: Mapping[str, Any] | str | None = None) -> Statement:
		statement = self.statement()
		statement.where(conditions)
		statement.mode = Mode.COUNT
		return statement.add_stage(_coerce_count, Operation.COUNT)

	# ---------- Writes ----------
	def insert(self, data: Mapping[str, Any] | Sequence[Mapping[str, Any]], fields: Iterable[str] | str | None = None) -> Statement:
		"""
		Insert one row (returns a dict or None) or a list of rows (returns a
		list with one entry per input row). `fields` selects RETURNING columns.
		"""
		insert_one = isinstance(data, Mapping)
		rows = [data] if insert_one else list(data or [])
		statement = self.statement()
		statement.mode = Mode.INSERT
		statement.insert(*rows)
		names = _split_fields(fields)
		if names:
			statement.add_field(*names)
		expected = len(rows)

		def _shape(result: QueryResult):
			items: list[Optional[dict]] = _plain_rows(result)
			if insert_one:
				return _first_or_none(items)
			if len(items) < expected:
				items.extend([None] * (expected - len(items)))
			return items

		return statement.add_stage(_shape, Operation.INSERT)

	def update(self, conditions: Mapping[str, Any] | str | None, data: Mapping[str, Any]) -> Statement:
		"""Resolves to the number of affected rows."""
		statement = self.statement()
		statement.mode = Mode.UPDATE
		statement.where(conditions)
		statement.update(data)
		return statement.add_stage(lambda result: result.row_count, Operation.UPDATE)

	def find_by_id_and_update(self, id: Any, data: Mapping[str, Any]) -> Statement:
		return self.update({"id": id}, data)
