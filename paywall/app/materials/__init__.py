"""Collaborator adapters for material metadata, users, and file content."""

from .catalog import (
    ContentStore,
    FileSystemContentStore,
    MaterialCatalog,
    PostgresMaterialCatalog,
    PostgresUserDirectory,
    UserDirectory,
)

__all__ = [
    "ContentStore",
    "FileSystemContentStore",
    "MaterialCatalog",
    "PostgresMaterialCatalog",
    "PostgresUserDirectory",
    "UserDirectory",
]
