"""Persistencia SQL: esquema y migraciones."""

from .schema import ensure_schema

__all__ = ["ensure_schema"]
