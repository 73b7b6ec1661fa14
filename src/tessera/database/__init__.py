"""
Database dump sources for Tessera.

Usage:
    from tessera.database import create_dump_source

    source = create_dump_source(connection, settings)
    source.dump_to(path)
    source.validate(path)
"""

from tessera.database.dumper import (
    DatabaseDriver,
    DumpError,
    DumpSource,
    MySqlDumpSource,
    PostgresDumpSource,
    SqliteDumpSource,
    create_dump_source,
)
from tessera.database.validator import DumpValidator

__all__ = [
    "DatabaseDriver",
    "DumpSource",
    "MySqlDumpSource",
    "PostgresDumpSource",
    "SqliteDumpSource",
    "create_dump_source",
    "DumpValidator",
    "DumpError",
]
