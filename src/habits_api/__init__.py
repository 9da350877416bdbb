"""
Habits backend package.

Recurring-todo materialization, orphan reconciliation and cascading deletes
over a per-user document store, served as a FastAPI application
(``habits_api.main:app``).
"""

__version__ = "0.1.0"
