"""Idempotent migration core of the database agent."""

__version__ = "0.3.0"
