from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from psql_fluent.errors import ValidationError

_SCHEMES = {"postgres", "postgresql"}


@dataclass(frozen=True)
class ConnectionConfig:
	"""
	Connection and pool parameters, parsed once at startup.

	Build directly:
		ConnectionConfig(database="app", user="postgres", host="localhost", maxconn=20)

	Or from a connection URL:
		ConnectionConfig.from_url("postgres://user:pw@localhost:5432/app?max=20&idle_timeout=5")
	"""
	database: str = "postgres"
	user: str = "postgres"
	password: Optional[str] = None
	host: Optional[str] = None
	port: Optional[int] = None
	minconn: int = 1
	maxconn: int = 10
	idle_timeout: float = 10.0
	pool_timeout: float = 30.0
	options: dict[str, Any] = field(default_factory=dict)

	def __post_init__(self):
		if not isinstance(self.minconn, int) or self.minconn < 0:
			raise ValidationError("minconn must be a non-negative integer.")
		if not isinstance(self.maxconn, int) or self.maxconn <= 0:
			raise ValidationError("maxconn must be a positive integer.")
		if self.minconn > self.maxconn:
			raise ValidationError("minconn cannot exceed maxconn.")
		if self.idle_timeout < 0 or self.pool_timeout <= 0:
			raise ValidationError("idle_timeout must be >= 0 and pool_timeout must be > 0.")

	@classmethod
	def from_url(cls, url: str) -> "ConnectionConfig":
		if not url:
			raise ValidationError("Connection URL is empty.")
		parts = urlsplit(url)
		if parts.scheme not in _SCHEMES:
			raise ValidationError(f"Unsupported connection URL scheme: {parts.scheme!r}")

		kwargs: dict[str, Any] = {}
		if parts.hostname:
			kwargs["host"] = parts.hostname
		try:
			port = parts.port
		except ValueError as exc:
			raise ValidationError(f"Invalid port in connection URL: {url!r}") from exc
		if port is not None:
			kwargs["port"] = port
		if parts.username:
			kwargs["user"] = unquote(parts.username)
			if parts.password is not None:
				kwargs["password"] = unquote(parts.password)
		database = unquote(parts.path.lstrip("/"))
		if database:
			kwargs["database"] = database

		options: dict[str, Any] = {}
		for key, value in parse_qsl(parts.query, keep_blank_values=True):
			if key in ("max", "maxconn"):
				kwargs["maxconn"] = cls._parse_number(key, value, int)
			elif key in ("min", "minconn"):
				kwargs["minconn"] = cls._parse_number(key, value, int)
			elif key == "idle_timeout":
				kwargs["idle_timeout"] = cls._parse_number(key, value, float)
			elif key == "idleTimeoutMillis":
				kwargs["idle_timeout"] = cls._parse_number(key, value, float) / 1000.0
			elif key == "pool_timeout":
				kwargs["pool_timeout"] = cls._parse_number(key, value, float)
			else:
				options[key] = value
		return cls(options=options, **kwargs)

	@staticmethod
	def _parse_number(key: str, value: str, kind):
		try:
			return kind(value)
		except ValueError as exc:
			raise ValidationError(f"Invalid value for {key!r} in connection URL: {value!r}") from exc

	def connect_kwargs(self) -> dict[str, Any]:
		"""Keyword arguments for psycopg2 connections."""
		kwargs: dict[str, Any] = dict(self.options)
		kwargs["database"] = self.database
		kwargs["user"] = self.user
		if self.password is not None:
			kwargs["password"] = self.password
		if self.host is not None:
			kwargs["host"] = self.host
		if self.port is not None:
			kwargs["port"] = self.port
		return kwargs

	def cache_key(self) -> tuple:
		"""
		Deterministic, hashable representation used by the client cache.
		"""
		frozen: list[tuple[str, Any]] = []
		for key, value in sorted(self.options.items()):
			try:
				hash(value)
				frozen.append((key, value))
			except TypeError:
				frozen.append((key, repr(value)))
		return (
			self.host, self.port, self.database, self.user, self.password,
			tuple(frozen), self.minconn, self.maxconn,
		)

	def __repr__(self) -> str:
		host = self.host or ""
		port = f":{self.port}" if self.port else ""
		return f"<ConnectionConfig {self.user}@{host}{port}/{self.database} pool={self.minconn}-{self.maxconn}>"
