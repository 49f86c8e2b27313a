"""Creación del esquema SQL del monitor."""

from __future__ import annotations

import logging
import pathlib

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = pathlib.Path(__file__).parent / "migrations"


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas si no existen. Idempotente.

    Ejecuta en orden cada ``migrations/*.sql``, separando sentencias por ``;``.
    """
    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not files:
        logger.warning("[DB] No migration files in %s - skipping schema creation", MIGRATIONS_DIR)
        return

    try:
        with engine.begin() as conn:
            for sql_file in files:
                statements = [s.strip() for s in sql_file.read_text().split(";") if s.strip()]
                for statement in statements:
                    conn.execute(text(statement))
                logger.info("[DB] Applied %s (%d statements)", sql_file.name, len(statements))
    except Exception as e:
        logger.exception("[DB] Schema creation failed: %s", e)
        raise
