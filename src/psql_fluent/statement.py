import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Optional

from psycopg2 import sql

from psql_fluent.errors import ValidationError
from psql_fluent.hooks import HookPipeline, Operation
from psql_fluent.surface import ExecutionSurface, QueryResult

logger = logging.getLogger(__name__)

_MISSING = object()
_IDENT_UNSAFE = re.compile(r"\W+")
_COMMA = sql.SQL(",")
_AND = sql.SQL(" AND ")


class Mode(str, Enum):
	SELECT = "select"
	INSERT = "insert"
	UPDATE = "update"
	COUNT = "count"
	CREATE = "create"
	INDEX = "index"


class RenderedStatement(NamedTuple):
	text: sql.Composable
	params: list


@dataclass
class QueryOptions:
	"""
	Everything a statement has accumulated. Owned by exactly one Statement.
	"""
	conditions: dict[str, Any] = field(default_factory=dict)
	raw_conditions: list[str] = field(default_factory=list)
	fields: list[str] = field(default_factory=list)
	orders: list[str] = field(default_factory=list)
	groups: list[str] = field(default_factory=list)
	havings: list[str] = field(default_factory=list)
	limit: int = 0
	offset: int = 0
	inserts: list[dict] = field(default_factory=list)
	updates: dict[str, Any] = field(default_factory=dict)
	count: str = "count(*)"
	constraints: list[str] = field(default_factory=list)
	indexes: list[str] = field(default_factory=list)
	index_name: Optional[str] = None
	unique_index: bool = False


def _relation(name: str) -> sql.Identifier:
	"""
	Quoted identifier for 'table' or 'schema.table'.
	"""
	parts = [part.strip('"') for part in str(name).split(".", 1)]
	return sql.Identifier(*parts)


def _unique_extend(dest: list, values: Iterable) -> None:
	for value in values:
		if value not in dest:
			dest.append(value)


def _is_sequence(value: Any) -> bool:
	return isinstance(value, (list, tuple, set, frozenset))


def _parse_count(value: Any) -> Optional[int]:
	try:
		number = int(value)
	except (TypeError, ValueError):
		return None
	return number if number >= 0 else None


class Statement:
	"""
	Fluent, single-use SQL statement bound to one table.

	Mutators accumulate intent and return the statement, nothing touches the
	database until `execute()` is awaited:

		rows = await (
			Statement("users", schema, surface)
			.where({"account": ["a", "b"]})
			.add_order_by("-age")
			.limit(10)
			.execute()
		)

	Execution happens at most once. Awaiting `execute()` again returns the same
	outcome (or re-raises the same error) without running SQL a second time.
	"""

	def __init__(
		self,
		table: str,
		schema: Mapping[str, str] | None,
		surface: Optional[ExecutionSurface] = None,
		*,
		constraints: Iterable[str] = (),
		hooks: Optional[HookPipeline] = None,
	):
		if not table or not schema:
			raise ValidationError("table and schema can not be empty.")
		self.table = table
		self.schema = schema
		self.surface = surface
		self.hooks = hooks
		self.options = QueryOptions()
		self.raw_mode = False
		self._stages: list[tuple[Optional[Operation], Optional[Callable[[Any], Any]]]] = []
		self._in_hooks = False
		self._mode = Mode.SELECT
		self._task: Optional[asyncio.Future] = None
		if constraints:
			self.add_constraint(*constraints)

	def __repr__(self) -> str:
		return f"<Statement {self.mode.value} {self.table} raw={self.raw_mode} executed={self._task is not None}>"

	@property
	def mode(self) -> Mode:
		return self._mode

	@mode.setter
	def mode(self, value: Mode | str) -> None:
		self._ensure_mutable()
		self._mode = Mode(value)

	def _ensure_mutable(self) -> None:
		# Once execute() is called only hooks may still change the statement.
		if self._task is not None and not self._in_hooks:
			raise RuntimeError("Statement has already been executed and can not be changed.")

	# ---------- Mutators ----------
	def raw(self, raw: bool = True) -> "Statement":
		"""Return the execution surface's QueryResult instead of post-processed data."""
		self._ensure_mutable()
		self.raw_mode = bool(raw)
		return self

	def where(self, key: Any = None, value: Any = _MISSING) -> "Statement":
		"""
		where("age", 30)            -> "age" = %s
		where({"account": [..]})    -> "account" IN (%s,...)
		where("age > 18")           -> raw predicate, ANDed after structured ones
		"""
		self._ensure_mutable()
		if key is None:
			return self
		if isinstance(key, Mapping):
			self.options.conditions.update(key)
		elif value is not _MISSING:
			self.options.conditions[key] = value
		elif isinstance(key, str):
			if key.strip():
				self.options.raw_conditions.append(key)
		else:
			raise ValidationError(f"Unsupported where() argument: {key!r}")
		return self

	def add_field(self, *names: str) -> "Statement":
		self._ensure_mutable()
		_unique_extend(self.options.fields, names)
		return self

	def add_order_by(self, *keys: str) -> "Statement":
		"""A leading '-' sorts descending."""
		self._ensure_mutable()
		_unique_extend(self.options.orders, keys)
		return self

	def add_group_by(self, *keys: str) -> "Statement":
		self._ensure_mutable()
		_unique_extend(self.options.groups, keys)
		return self

	def add_having(self, *clauses: str) -> "Statement":
		self._ensure_mutable()
		_unique_extend(self.options.havings, clauses)
		return self

	def add_constraint(self, *clauses: str) -> "Statement":
		self._ensure_mutable()
		_unique_extend(self.options.constraints, clauses)
		return self

	def add_index(self, *columns: str) -> "Statement":
		self._ensure_mutable()
		_unique_extend(self.options.indexes, columns)
		return self

	def index_options(self, name: Optional[str] = None, unique: bool = False) -> "Statement":
		self._ensure_mutable()
		self.options.index_name = name
		self.options.unique_index = bool(unique)
		return self

	def count_by(self, expression: str) -> "Statement":
		self._ensure_mutable()
		if expression:
			self.options.count = expression
		return self

	def limit(self, count: Any) -> "Statement":
		self._ensure_mutable()
		value = _parse_count(count)
		if value is not None:
			self.options.limit = value
		return self

	def offset(self, count: Any) -> "Statement":
		self._ensure_mutable()
		value = _parse_count(count)
		if value is not None:
			self.options.offset = value
		return self

	def insert(self, *rows: Mapping[str, Any]) -> "Statement":
		"""
		Queue rows for a multi-row INSERT. Every row must have the key set of
		the first one, since all rows share one column list.
		"""
		self._ensure_mutable()
		inserts = self.options.inserts
		for idx, row in enumerate(rows):
			if not isinstance(row, Mapping) or not row:
				raise ValidationError(f"rows[{idx}] must be a non-empty mapping.")
			if inserts and set(row.keys()) != set(inserts[0].keys()):
				raise ValidationError("All rows must contain the same keys.")
			inserts.append(dict(row))
		return self

	def update(self, key: Any = None, value: Any = _MISSING) -> "Statement":
		self._ensure_mutable()
		if not key:
			return self
		if isinstance(key, Mapping):
			self.options.updates.update(key)
		elif value is not _MISSING:
			self.options.updates[key] = value
		else:
			raise ValidationError(f"update() needs a mapping or a column and a value, got {key!r}")
		return self

	def add_stage(self, transform: Optional[Callable[[Any], Any]] = None, operation: Operation | str | None = None) -> "Statement":
		"""
		Attach a resolution stage: hooks registered for `operation` run before
		rendering and `transform` post-processes the result unless raw mode is on.
		Stages attached later wrap earlier ones, so their hooks run first and
		their transforms run last.
		"""
		self._ensure_mutable()
		op = Operation.coerce(operation) if operation is not None else None
		self._stages.append((op, transform))
		return self

	# ---------- Rendering ----------
	def _column(self, name: str) -> sql.Composable:
		"""Quote schema columns; expressions and qualified names pass through."""
		if name in self.schema:
			return sql.Identifier(name)
		return sql.SQL(name)

	def _where(self, params: list) -> sql.Composable:
		conditions = self.options.conditions
		raw_conditions = self.options.raw_conditions
		if not conditions and not raw_conditions:
			return sql.SQL("")
		parts: list[sql.Composable] = []
		for column, value in conditions.items():
			ident = self._column(column)
			if value is None:
				parts.append(sql.SQL("{} IS NULL").format(ident))
			elif _is_sequence(value):
				values = list(value)
				if not values:
					parts.append(sql.SQL("FALSE"))
					continue
				params.extend(values)
				placeholders = _COMMA.join([sql.Placeholder()] * len(values))
				parts.append(sql.SQL("{} IN ({})").format(ident, placeholders))
			else:
				params.append(value)
				parts.append(sql.SQL("{} = {}").format(ident, sql.Placeholder()))
		parts.extend(sql.SQL(fragment) for fragment in raw_conditions)
		return sql.SQL(" WHERE ") + _AND.join(parts)

	def _order_by(self) -> sql.Composable:
		items = []
		for order in self.options.orders:
			if order.startswith("-"):
				items.append(self._column(order[1:]) + sql.SQL(" DESC"))
			else:
				items.append(self._column(order))
		return _COMMA.join(items)

	def render_select(self) -> RenderedStatement:
		opts = self.options
		params: list = []
		fields = _COMMA.join(self._column(f) for f in opts.fields) if opts.fields else sql.SQL("*")
		query = sql.SQL("SELECT {fields} FROM {tbl}").format(fields=fields, tbl=_relation(self.table))
		query += self._where(params)
		if opts.groups:
			query += sql.SQL(" GROUP BY ") + _COMMA.join(self._column(g) for g in opts.groups)
			if opts.havings:
				query += sql.SQL(" HAVING ") + _AND.join(sql.SQL(h) for h in opts.havings)
		if opts.orders:
			query += sql.SQL(" ORDER BY ") + self._order_by()
		if opts.limit:
			query += sql.SQL(" LIMIT {}").format(sql.Literal(opts.limit))
		if opts.offset:
			query += sql.SQL(" OFFSET {}").format(sql.Literal(opts.offset))
		return RenderedStatement(query, params)

	def render_insert(self) -> Optional[RenderedStatement]:
		inserts = self.options.inserts
		if not inserts:
			return None
		columns = list(inserts[0].keys())
		expected = set(columns)
		params: list = []
		for row in inserts:
			if set(row.keys()) != expected:
				raise ValidationError("All rows must contain the same keys.")
			params.extend(row[c] for c in columns)
		row_sql = sql.SQL("({})").format(_COMMA.join([sql.Placeholder()] * len(columns)))
		query = sql.SQL("INSERT INTO {tbl} ({cols}) VALUES {rows}").format(
			tbl=_relation(self.table),
			cols=_COMMA.join(sql.Identifier(c) for c in columns),
			rows=_COMMA.join([row_sql] * len(inserts)),
		)
		if self.options.fields:
			query += sql.SQL(" RETURNING ") + _COMMA.join(self._column(f) for f in self.options.fields)
		return RenderedStatement(query, params)

	def render_update(self) -> Optional[RenderedStatement]:
		updates = self.options.updates
		if not updates:
			return None
		params: list = list(updates.values())
		sets = _COMMA.join(
			sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder())
			for column in updates
		)
		query = sql.SQL("UPDATE {tbl} SET {sets}").format(tbl=_relation(self.table), sets=sets)
		query += self._where(params)
		return RenderedStatement(query, params)

	def render_count(self) -> RenderedStatement:
		params: list = []
		query = sql.SQL("SELECT {} FROM {}").format(sql.SQL(self.options.count), _relation(self.table))
		query += self._where(params)
		return RenderedStatement(query, params)

	def render_create(self) -> RenderedStatement:
		items = [
			sql.SQL("{} {}").format(sql.Identifier(column), sql.SQL(type_sql))
			for column, type_sql in self.schema.items()
		]
		items.extend(sql.SQL(c) for c in self.options.constraints)
		query = sql.SQL("CREATE TABLE {} ({})").format(_relation(self.table), _COMMA.join(items))
		return RenderedStatement(query, [])

	def render_index(self) -> Optional[RenderedStatement]:
		opts = self.options
		if not opts.indexes:
			return None
		name = opts.index_name or "_".join(
			_IDENT_UNSAFE.sub("_", part).strip("_") for part in [self.table, *opts.indexes, "idx"]
		)
		query = sql.SQL("CREATE {unique}INDEX {name} ON {tbl} ({cols})").format(
			unique=sql.SQL("UNIQUE " if opts.unique_index else ""),
			name=sql.Identifier(name),
			tbl=_relation(self.table),
			cols=_COMMA.join(self._column(c) for c in opts.indexes),
		)
		return RenderedStatement(query, [])

	def render(self) -> Optional[RenderedStatement]:
		"""
		Render according to the current mode. Returns None when there is
		nothing to run (no rows to insert, no data to update, no index columns).
		"""
		renderers = {
			Mode.SELECT: self.render_select,
			Mode.INSERT: self.render_insert,
			Mode.UPDATE: self.render_update,
			Mode.COUNT: self.render_count,
			Mode.CREATE: self.render_create,
			Mode.INDEX: self.render_index,
		}
		return renderers[self.mode]()

	# ---------- Execution ----------
	@property
	def executed(self) -> bool:
		return self._task is not None

	def _run_hooks(self) -> None:
		if self.hooks is None:
			return
		self._in_hooks = True
		try:
			for operation, _ in reversed(self._stages):
				if operation is not None:
					self.hooks.run(operation, self, self.table)
		finally:
			self._in_hooks = False

	async def _resolve(self) -> Any:
		self._run_hooks()
		rendered = self.render()
		if rendered is None:
			logger.debug("mode:%s table:%s nothing to execute", self.mode.value, self.table)
			result = QueryResult.empty()
		else:
			logger.debug("mode:%s table:%s params:%s", self.mode.value, self.table, rendered.params)
			result = await self.surface.execute(rendered.text, rendered.params)
		if self.raw_mode:
			return result
		for _, transform in self._stages:
			if transform is not None:
				result = transform(result)
		return result

	def execute(self) -> "asyncio.Future[Any]":
		"""
		Run the statement once and return an awaitable of its (memoized) outcome.
		The statement refuses further changes from this call on.
		"""
		if self._task is None:
			if self.surface is None:
				raise ValidationError("Statement has no execution surface to run on.")
			self._task = asyncio.ensure_future(self._resolve())
		return self._task
