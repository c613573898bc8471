from .interfaces import SqlExecutor, TaskStore
from .schema import ensure_schema
from .sql import SqlAlchemyExecutor, make_engine
from .sql_store import SqlTaskStore

__all__ = [
    "SqlAlchemyExecutor",
    "SqlExecutor",
    "SqlTaskStore",
    "TaskStore",
    "ensure_schema",
    "make_engine",
]
