import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable

from psql_fluent.errors import ValidationError

if TYPE_CHECKING:
	from psql_fluent.statement import Statement

logger = logging.getLogger(__name__)

Hook = Callable[["Statement", str], None]


class Operation(str, Enum):
	"""Table operations that hooks can attach to."""
	INSERT = "insert"
	UPDATE = "update"
	FIND = "find"
	FIND_ONE = "findOne"
	COUNT = "count"

	@classmethod
	def coerce(cls, value: "Operation | str") -> "Operation":
		if isinstance(value, cls):
			return value
		try:
			return cls(value)
		except ValueError:
			raise ValidationError(f"Unknown hook operation: {value!r}") from None


class HookPipeline:
	"""
	Ordered callbacks per operation, run just before a statement renders.

	Each callback receives the live statement and the table name, so it can
	stamp pending inserts or updates:

		hooks = HookPipeline()

		@hooks.on(Operation.INSERT)
		def stamp_created(statement, table):
			for row in statement.options.inserts:
				row.setdefault("createdAt", now())
	"""

	def __init__(self):
		self._hooks: dict[Operation, list[Hook]] = {op: [] for op in Operation}

	def register(self, operation: Operation | str, callback: Hook) -> Hook:
		op = Operation.coerce(operation)
		if not callable(callback):
			raise ValidationError("Hook callback must be callable.")
		self._hooks[op].append(callback)
		logger.debug("Registered %s hook %r", op.value, callback)
		return callback

	def on(self, operation: Operation | str) -> Callable[[Hook], Hook]:
		"""Decorator form of register()."""
		def decorator(callback: Hook) -> Hook:
			return self.register(operation, callback)
		return decorator

	def callbacks(self, operation: Operation | str) -> tuple[Hook, ...]:
		return tuple(self._hooks[Operation.coerce(operation)])

	def run(self, operation: Operation | str, statement: "Statement", table: str) -> None:
		for callback in self._hooks[Operation.coerce(operation)]:
			callback(statement, table)
