import asyncio
import logging
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from psycopg2 import InterfaceError, OperationalError
from psycopg2.pool import ThreadedConnectionPool
from psycopg2.sql import Composable

from psql_fluent.config import ConnectionConfig
from psql_fluent.errors import PoolExhaustedError, ValidationError

logger = logging.getLogger(__name__)

EVENTS = ("acquire", "remove", "error", "connect")


@dataclass
class QueryResult:
	"""
	Outcome of one statement: result rows, affected row count and the
	command tag reported by the server (e.g. "INSERT", "UPDATE").
	"""
	rows: list[dict] = field(default_factory=list)
	row_count: int = 0
	command: Optional[str] = None

	@classmethod
	def empty(cls) -> "QueryResult":
		return cls()


@runtime_checkable
class ExecutionSurface(Protocol):
	"""Anything a statement can be dispatched to."""

	async def execute(self, text: "str | Composable", params: Optional[Sequence[Any]] = None) -> QueryResult:
		...


def _result_from_cursor(cur) -> QueryResult:
	rows: list[dict] = []
	if cur.description is not None:
		colnames = [d[0] for d in cur.description]
		rows = [dict(zip(colnames, r)) for r in cur.fetchall()]
	status = getattr(cur, "statusmessage", None)
	command = status.split(" ", 1)[0] if status else None
	return QueryResult(rows=rows, row_count=cur.rowcount, command=command)


def run_on_connection(conn, query, params: Optional[Sequence[Any]] = None, *, commit: bool) -> QueryResult:
	"""
	Blocking execution on an already-acquired connection.
	`query` is SQL text or a psycopg2.sql Composable.
	With commit=True the statement is committed on success and rolled back on error.

	Statements without parameters are sent without an argument sequence, so
	psycopg2 does not %-format them and verbatim fragments such as
	CHECK (email LIKE '%@%') reach the server unchanged.
	"""
	args = list(params) if params else None
	try:
		with conn.cursor() as cur:
			cur.execute(query, args)
			logger.debug("Executed %s params:%s", getattr(cur, "query", query), args)
			result = _result_from_cursor(cur)
		if commit:
			conn.commit()
		return result
	except Exception:
		if commit:
			conn.rollback()
		raise


class PoolSurface:
	"""
	Executes each statement on its own connection checked out from a
	psycopg2 ThreadedConnectionPool. Blocking driver calls run in the
	event loop's default executor.

	Checkouts wait on a semaphore sized to `maxconn`, so callers suspend
	instead of hitting psycopg2's "connection pool exhausted" error. The
	semaphore is tied to the running event loop. A surface used from a new
	loop starts a fresh one, so one surface must not serve two loops at the
	same time.
	"""

	def __init__(self, config: ConnectionConfig, *, pool_factory: Optional[Callable[..., Any]] = None):
		self.config = config
		self._closed = False
		self._state_lock = RLock()
		self._released_at: dict[Any, float] = {}
		self._listeners: dict[str, list[Callable[..., None]]] = {event: [] for event in EVENTS}
		self._semaphore: Optional[asyncio.Semaphore] = None
		self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

		logger.debug("Creating connection pool for %r", config)
		factory = pool_factory or ThreadedConnectionPool
		self.pool = factory(config.minconn, config.maxconn, **config.connect_kwargs())

	def __repr__(self) -> str:
		return f"<PoolSurface {self.config!r} closed={self._closed}>"

	@property
	def closed(self) -> bool:
		return self._closed

	# ---------- Events ----------
	def on(self, event: str, listener: Callable[..., None]) -> Callable[..., None]:
		if event not in self._listeners:
			raise ValidationError(f"Unknown pool event: {event!r}. Expected one of {EVENTS}.")
		self._listeners[event].append(listener)
		return listener

	def _emit(self, event: str, *args) -> None:
		for listener in list(self._listeners[event]):
			listener(*args)

	# ---------- Pool plumbing ----------
	def close(self) -> None:
		"""Close every pooled connection."""
		with self._state_lock:
			if self._closed:
				return
			self._closed = True
			self._released_at.clear()
		try:
			self.pool.closeall()
		except Exception:
			logger.exception("Error closing connection pool")
		logger.info("Closed connection pool for %r", self.config)

	def _ensure_open(self) -> None:
		with self._state_lock:
			if self._closed:
				raise RuntimeError("Connection pool is closed.")

	def _idle_expired(self, released_at: float) -> bool:
		idle_timeout = self.config.idle_timeout
		return bool(idle_timeout) and time.monotonic() - released_at > idle_timeout

	def _checkout(self) -> tuple[Any, bool, list]:
		removed = []
		while True:
			self._ensure_open()
			conn = self.pool.getconn()
			with self._state_lock:
				released_at = self._released_at.pop(conn, None)
			if getattr(conn, "closed", 0) or (released_at is not None and self._idle_expired(released_at)):
				self.pool.putconn(conn, close=True)
				removed.append(conn)
				continue
			return conn, released_at is None, removed

	def _put_conn(self, conn, close: bool = False) -> None:
		try:
			self.pool.putconn(conn, close=close)
		except Exception:
			# The pool may already be closed while a connection is out.
			with self._state_lock:
				if not self._closed:
					raise
			return
		# The pool closes connections beyond minconn instead of keeping them.
		if not close and not getattr(conn, "closed", 0):
			with self._state_lock:
				self._released_at[conn] = time.monotonic()

	def _slots(self) -> asyncio.Semaphore:
		loop = asyncio.get_running_loop()
		if self._semaphore is None or self._semaphore_loop is not loop:
			self._semaphore = asyncio.Semaphore(self.config.maxconn)
			self._semaphore_loop = loop
		return self._semaphore

	async def acquire(self):
		"""
		Check out a connection, waiting up to `pool_timeout` seconds for a free slot.
		"""
		self._ensure_open()
		timeout = self.config.pool_timeout
		slots = self._slots()
		try:
			await asyncio.wait_for(slots.acquire(), timeout=timeout)
		except asyncio.TimeoutError:
			raise PoolExhaustedError(f"Connection pool exhausted. Timeout after {timeout}s") from None

		loop = asyncio.get_running_loop()
		try:
			conn, fresh, removed = await loop.run_in_executor(None, self._checkout)
		except BaseException:
			slots.release()
			raise

		for old in removed:
			logger.debug("Discarded idle or closed connection %r", old)
			self._emit("remove", old)
		if fresh:
			self._emit("connect", conn)
		self._emit("acquire", conn)
		return conn

	async def release(self, conn, discard: bool = False) -> None:
		loop = asyncio.get_running_loop()
		try:
			await loop.run_in_executor(None, self._put_conn, conn, discard)
		finally:
			self._slots().release()
		if discard:
			self._emit("remove", conn)

	# ---------- Execution ----------
	async def execute(self, text: "str | Composable", params: Optional[Sequence[Any]] = None) -> QueryResult:
		conn = await self.acquire()
		discard = False
		loop = asyncio.get_running_loop()
		try:
			return await loop.run_in_executor(
				None, lambda: run_on_connection(conn, text, params, commit=True)
			)
		except (OperationalError, InterfaceError) as exc:
			# Connection-level failure: do not hand this connection out again.
			discard = True
			self._emit("error", exc, conn)
			raise
		finally:
			await self.release(conn, discard=discard)


class ConnectionSurface:
	"""
	Executes statements on one checked-out connection. Nothing is committed
	here: the connection runs in autocommit mode and explicit BEGIN/COMMIT
	statements delimit transaction blocks.
	"""

	def __init__(self, conn):
		if conn is None:
			raise ValidationError("connection can not be None.")
		self.connection = conn

	def __repr__(self) -> str:
		return f"<ConnectionSurface {self.connection!r}>"

	async def execute(self, text: "str | Composable", params: Optional[Sequence[Any]] = None) -> QueryResult:
		loop = asyncio.get_running_loop()
		return await loop.run_in_executor(
			None, lambda: run_on_connection(self.connection, text, params, commit=False)
		)
