"""Relational persistence for the event log (SQLAlchemy async)."""
