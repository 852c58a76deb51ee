from psycopg2 import Error as ExecutionError

__all__ = [
	"CoercionWarning",
	"ExecutionError",
	"PoolExhaustedError",
	"ValidationError",
]


class ValidationError(ValueError):
	"""
	Raised before any I/O when required arguments are missing or malformed.
	"""


class PoolExhaustedError(RuntimeError):
	"""No pool slot became available within the configured timeout."""


class CoercionWarning(UserWarning):
	"""
	A count aggregate could not be read as an integer and was reported as 0.
	Use raw mode to get at the unconverted value.
	"""
