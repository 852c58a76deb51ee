import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

from psql_fluent.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSchema:
	"""
	Column definitions and table-level constraints registered for one table.

	`columns` maps column name -> native type definition, e.g.
		{"account": "varchar(80) unique", "age": "smallint CHECK (age > 0)"}
	`constraints` are appended verbatim after the columns in CREATE TABLE.
	"""
	table: str
	columns: Mapping[str, str]
	constraints: tuple[str, ...] = ()

	def __contains__(self, column: object) -> bool:
		return column in self.columns


class SchemaRegistry:
	"""
	Table name -> TableSchema. Populated at setup, read by every statement.
	"""

	def __init__(self):
		self._tables: dict[str, TableSchema] = {}

	def register(
		self,
		table: str,
		schema: Mapping[str, str] | None,
		constraints: Iterable[str] | None = None,
	) -> TableSchema:
		if not table:
			raise ValidationError("table can not be empty.")
		if not schema:
			raise ValidationError(f"schema for table '{table}' can not be empty.")
		for name, type_sql in schema.items():
			if not isinstance(type_sql, str) or not type_sql.strip():
				raise ValidationError(f"Invalid type/constraint for column '{name}'.")

		entry = TableSchema(
			table=table,
			columns=MappingProxyType(dict(schema)),
			constraints=tuple(constraints or ()),
		)
		if table in self._tables:
			logger.debug("Replacing schema for table %s", table)
		self._tables[table] = entry
		return entry

	def lookup(self, table: str) -> Optional[TableSchema]:
		return self._tables.get(table)

	def __contains__(self, table: object) -> bool:
		return table in self._tables

	def __iter__(self) -> Iterator[str]:
		return iter(list(self._tables))

	def __len__(self) -> int:
		return len(self._tables)
