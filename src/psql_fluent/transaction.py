import logging
from typing import TYPE_CHECKING, Any, Optional, Sequence

from psql_fluent.errors import ValidationError
from psql_fluent.hooks import HookPipeline
from psql_fluent.schema import SchemaRegistry
from psql_fluent.surface import ConnectionSurface, QueryResult
from psql_fluent.table import Table

if TYPE_CHECKING:
	from psql_fluent.surface import PoolSurface

logger = logging.getLogger(__name__)


class Transaction:
	"""
	One checked-out connection with explicit transaction control.

	Manual form (always pair begin with commit or rollback, and release):
		tx = await client.transaction()
		try:
			await tx.begin()
			await tx.table("users").update({"account": "a"}, {"age": 22}).execute()
			await tx.commit()
		except Exception:
			await tx.rollback()
			raise
		finally:
			await tx.release()

	Context-manager form (commits on success, rolls back on error, releases):
		async with await client.transaction() as tx:
			await tx.table("users").update({"account": "a"}, {"age": 22}).execute()
	"""

	def __init__(
		self,
		pool: "PoolSurface",
		conn,
		*,
		schemas: Optional[SchemaRegistry] = None,
		hooks: Optional[HookPipeline] = None,
	):
		if pool is None or conn is None:
			raise ValidationError("pool and connection can not be None.")
		self._pool = pool
		self._prev_autocommit = getattr(conn, "autocommit", False)
		# BEGIN/COMMIT/ROLLBACK are sent as statements.
		conn.autocommit = True
		self.surface = ConnectionSurface(conn)
		self.schemas = schemas if schemas is not None else SchemaRegistry()
		self.hooks = hooks
		self._in_block = False
		self._released = False

	def __repr__(self) -> str:
		return f"<Transaction in_block={self._in_block} released={self._released}>"

	@property
	def connection(self):
		return self.surface.connection

	@property
	def in_transaction(self) -> bool:
		return self._in_block

	@property
	def released(self) -> bool:
		return self._released

	def _ensure_usable(self) -> None:
		if self._released:
			raise RuntimeError("Transaction connection has already been released.")

	async def query(self, text: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
		self._ensure_usable()
		return await self.surface.execute(text, params)

	async def begin(self) -> QueryResult:
		result = await self.query("BEGIN")
		self._in_block = True
		logger.debug("Transaction started")
		return result

	async def commit(self) -> QueryResult:
		result = await self.query("COMMIT")
		self._in_block = False
		logger.debug("Transaction committed")
		return result

	async def rollback(self) -> QueryResult:
		result = await self.query("ROLLBACK")
		self._in_block = False
		logger.debug("Transaction rolled back")
		return result

	async def release(self) -> None:
		"""Return the connection to the pool. Safe to call more than once."""
		if self._released:
			return
		conn = self.connection
		discard = False
		try:
			if self._in_block:
				logger.warning("Releasing connection with an open transaction; rolling back")
				try:
					await self.rollback()
				except Exception:
					logger.exception("Rollback before release failed; discarding connection")
					discard = True
			if not discard:
				conn.autocommit = self._prev_autocommit
		finally:
			self._released = True
			await self._pool.release(conn, discard=discard)

	def table(self, name: str) -> Table:
		self._ensure_usable()
		return Table(self.surface, name, schemas=self.schemas, hooks=self.hooks)

	async def __aenter__(self) -> "Transaction":
		await self.begin()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> bool:
		try:
			if exc_type is None:
				try:
					await self.commit()
				except Exception:
					await self.rollback()
					raise
			else:
				await self.rollback()
		finally:
			await self.release()
		return False
