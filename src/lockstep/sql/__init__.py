from .executor import RowSet, StatementExecutor

__all__ = ("RowSet", "StatementExecutor")
