"""
Query execution for AgentDB.

The executor is the only component that writes records. It runs inside
the owning actor's turn and hands committed mutations to the change
notifier before returning.
"""

from .executor import QueryExecutor, sort_rows, system_clock_ms

__all__ = ["QueryExecutor", "sort_rows", "system_clock_ms"]
