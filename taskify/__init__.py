"""
Taskify — client-side cache and sync layer for tasks and teams.

Keeps a session-scoped, optimistically updated copy of the remote task and
team tables, reconciles it through full re-fetches driven by a change feed,
and computes the derived views (overdue, due soon, completion rate) a task
dashboard renders.
"""

__version__ = "1.0.0"
__all__ = ["engine", "sync", "session"]
