from psql_fluent.client import PGClient
from psql_fluent.config import ConnectionConfig
from psql_fluent.errors import CoercionWarning, ExecutionError, PoolExhaustedError, ValidationError
from psql_fluent.hooks import HookPipeline, Operation
from psql_fluent.schema import SchemaRegistry, TableSchema
from psql_fluent.statement import Mode, QueryOptions, RenderedStatement, Statement
from psql_fluent.surface import ConnectionSurface, ExecutionSurface, PoolSurface, QueryResult
from psql_fluent.table import Table
from psql_fluent.transaction import Transaction

__all__ = [
	"CoercionWarning",
	"ConnectionConfig",
	"ConnectionSurface",
	"ExecutionError",
	"ExecutionSurface",
	"HookPipeline",
	"Mode",
	"Operation",
	"PGClient",
	"PoolExhaustedError",
	"PoolSurface",
	"QueryOptions",
	"QueryResult",
	"RenderedStatement",
	"SchemaRegistry",
	"Statement",
	"Table",
	"TableSchema",
	"Transaction",
	"ValidationError",
]
