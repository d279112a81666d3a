"""Read-only adapters for the material metadata, user, and blob collaborators."""
from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..purchases.models import Material
from ..purchases.repository import managed_connection


class MaterialCatalog(Protocol):
    """Lookups against material metadata owned by another service."""

    def get_material(self, material_id: str) -> Optional[Material]:
        ...

    def list_materials(self) -> Sequence[Material]:
        ...


class UserDirectory(Protocol):
    def user_exists(self, user_id: str) -> bool:
        ...


class ContentStore(Protocol):
    """Blob storage holding the material files."""

    def read(self, content_ref: str) -> bytes:
        ...


def _row_to_material(row: dict) -> Material:
    return Material(
        material_id=str(row["id"]),
        title=row["title"],
        price=Decimal(row["price"]),
        content_ref=row["content_ref"],
        filename=row.get("filename"),
        content_type=row.get("content_type") or "application/pdf",
    )


class _PostgresReader:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()


class PostgresMaterialCatalog(_PostgresReader):
    """Reads the ``materials`` table maintained by the metadata service."""

    def get_material(self, material_id: str) -> Optional[Material]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, title, price, content_ref, filename, content_type
                FROM materials
                WHERE id::text = %s
                LIMIT 1
                """,
                (material_id,),
            )
            row = cursor.fetchone()
            return _row_to_material(row) if row else None

    def list_materials(self) -> list[Material]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, title, price, content_ref, filename, content_type
                FROM materials
                ORDER BY title
                """
            )
            rows = cursor.fetchall() or []
            return [_row_to_material(row) for row in rows]


class PostgresUserDirectory(_PostgresReader):
    def user_exists(self, user_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT EXISTS (SELECT 1 FROM users WHERE id::text = %s) AS found",
                (user_id,),
            )
            row = cursor.fetchone()
            return bool(row and row["found"])


class FileSystemContentStore:
    """Serves material files from a directory on local disk."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def resolve(self, content_ref: str) -> Path:
        candidate = (self._root / content_ref).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise ValueError(f"Content reference escapes storage root: {content_ref!r}")
        return candidate

    def read(self, content_ref: str) -> bytes:
        path = self.resolve(content_ref)
        if not path.is_file():
            raise FileNotFoundError(content_ref)
        return path.read_bytes()


__all__ = [
    "ContentStore",
    "FileSystemContentStore",
    "MaterialCatalog",
    "PostgresMaterialCatalog",
    "PostgresUserDirectory",
    "UserDirectory",
]
