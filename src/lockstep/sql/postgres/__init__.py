from .executor import PostgresExecutor
from .interface import PostgresPool

__all__ = ("PostgresExecutor", "PostgresPool")
