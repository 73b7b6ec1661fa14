"""
Sanity checks for database dump files.

A dump is checked before it is added to an archive: it must exist, be
non-empty, and start with what its dump tool normally writes.
"""

from __future__ import annotations

import logging
from pathlib import Path

from tessera.database.dumper import DatabaseDriver, DumpError

logger = logging.getLogger(__name__)

HEADER_BYTES = 4096
TAIL_BYTES = 1024

MYSQL_HEADER_MARKERS = (
    b"-- MySQL dump",
    b"-- MariaDB dump",
    b"-- mysqldump",
    b"-- Server version",
    b"/*!",
)
SQLITE_HEADER = b"SQLite format 3\x00"
SQLITE_MIN_SIZE = 100


class DumpValidator:
    """Validates dump files by driver."""

    @classmethod
    def validate(cls, path: Path | str, driver: DatabaseDriver) -> None:
        """
        Validate a dump file.

        Raises:
            DumpError: If the file is missing, empty or malformed.
        """
        path = Path(path)
        if not path.exists():
            raise DumpError(f"Dump file does not exist: {path}")

        size = path.stat().st_size
        if size == 0:
            raise DumpError(f"Dump file is empty (0 bytes): {path}")

        if driver is DatabaseDriver.MYSQL:
            cls._validate_mysql(path, size)
        elif driver is DatabaseDriver.POSTGRES:
            cls._validate_postgres(path, size)
        elif driver is DatabaseDriver.SQLITE:
            cls._validate_sqlite(path, size)

    @staticmethod
    def _validate_mysql(path: Path, size: int) -> None:
        with open(path, "rb") as f:
            header = f.read(min(HEADER_BYTES, size))
            if not any(marker in header for marker in MYSQL_HEADER_MARKERS) and not (
                header.strip().startswith(b"--")
            ):
                raise DumpError("MySQL dump appears invalid: missing expected header comments.")

            f.seek(max(0, size - TAIL_BYTES))
            tail = f.read(TAIL_BYTES)

        if size > TAIL_BYTES and b"Dump completed" not in tail:
            logger.warning(
                f"MySQL dump may be incomplete: missing 'Dump completed' marker "
                f"at end of {path} ({size:,} bytes)"
            )

    @staticmethod
    def _validate_postgres(path: Path, size: int) -> None:
        with open(path, "rb") as f:
            header = f.read(min(HEADER_BYTES, size))
        stripped = header.strip()
        if (
            b"PostgreSQL database dump" not in header
            and not stripped.startswith(b"--")
            and not stripped.startswith(b"SET ")
        ):
            raise DumpError("PostgreSQL dump appears invalid: missing expected header.")

    @staticmethod
    def _validate_sqlite(path: Path, size: int) -> None:
        if size < SQLITE_MIN_SIZE:
            raise DumpError(f"SQLite dump file is suspiciously small ({size} bytes).")
        with open(path, "rb") as f:
            header = f.read(len(SQLITE_HEADER))
        if header != SQLITE_HEADER:
            raise DumpError("SQLite dump does not have a valid SQLite header.")
