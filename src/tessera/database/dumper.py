"""
Database dump sources.

Each supported driver has one DumpSource implementation. A dump source can
write a dump to a local file (direct path) or expose the dump tool's stdout
as a stream (chunked path). Dump output is treated as opaque bytes.

Credentials never appear on a command line: MySQL gets a 0600
--defaults-extra-file, PostgreSQL a 0600 PGPASSFILE. Both files are removed
as soon as the dump tool exits.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from tessera.config.settings import (
    ConfigurationError,
    DatabaseConfig,
    DatabaseConnection,
    Settings,
)

logger = logging.getLogger(__name__)

DEFAULT_MYSQL_PORT = 3306
DEFAULT_POSTGRES_PORT = 5432
STDERR_TAIL_BYTES = 2000


class DumpError(Exception):
    """Raised when a database dump fails or produces an invalid file."""

    def __init__(self, message: str, connection: str | None = None) -> None:
        self.connection = connection
        super().__init__(f"[{connection}] {message}" if connection else message)


class DatabaseDriver(Enum):
    """Supported database drivers."""

    MYSQL = "mysql"
    POSTGRES = "pgsql"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, name: str) -> DatabaseDriver:
        """
        Map a configured driver name onto the enum.

        Raises:
            ConfigurationError: If the driver is not supported.
        """
        aliases = {
            "mysql": cls.MYSQL,
            "mariadb": cls.MYSQL,
            "pgsql": cls.POSTGRES,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "sqlite": cls.SQLITE,
        }
        try:
            return aliases[name.strip().lower()]
        except KeyError:
            raise ConfigurationError(f"Unsupported database driver: {name}") from None


# -----------------------------------------------------------------------------
# Dump Source Interface
# -----------------------------------------------------------------------------


class DumpSource(ABC):
    """Produces the dump of one database connection."""

    driver: DatabaseDriver

    def __init__(self, connection: DatabaseConnection, config: DatabaseConfig) -> None:
        self.connection = connection
        self.config = config

    @property
    def name(self) -> str:
        return self.connection.name

    @abstractmethod
    def dump_to(self, path: Path) -> None:
        """
        Write a complete dump to path.

        Raises:
            DumpError: If the dump fails.
        """

    @abstractmethod
    @contextmanager
    def open_stream(self) -> Iterator[BinaryIO]:
        """
        Yield a readable stream of the dump.

        On exit the dump process is waited for; a non-zero exit raises
        DumpError.
        """

    def validate(self, path: Path) -> None:
        """Check a dump file before it is added to an archive."""
        from tessera.database.validator import DumpValidator

        DumpValidator.validate(path, self.driver)


class CommandDumpSource(DumpSource):
    """Base for dump sources that run an external dump tool."""

    def fallback_available(self) -> bool:
        """Whether a retry with a reduced flag set is worth trying."""
        return False

    @abstractmethod
    def build_command(self, credentials_path: str, fallback: bool = False) -> list[str]:
        """Build the dump command line."""

    @abstractmethod
    def _write_credentials(self, handle: BinaryIO) -> None:
        """Write the credentials file content."""

    def _environment(self, credentials_path: str) -> dict[str, str] | None:
        return None

    @contextmanager
    def _credentials(self) -> Iterator[str]:
        fd, path = tempfile.mkstemp(prefix=f"tessera_{self.driver.value}_")
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, "wb") as handle:
                self._write_credentials(handle)
            yield path
        finally:
            if os.path.exists(path):
                os.unlink(path)

    def _run(self, command: list[str], path: Path, env: dict[str, str] | None) -> tuple[int, str]:
        with open(path, "wb") as out:
            try:
                completed = subprocess.run(
                    command,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=env,
                    check=False,
                )
            except OSError as e:
                raise DumpError(f"Cannot run {command[0]}: {e}", self.name) from e
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        return completed.returncode, stderr[-STDERR_TAIL_BYTES:]

    def dump_to(self, path: Path) -> None:
        logger.info(f"Dumping database '{self.name}' ({self.driver.value})")
        with self._credentials() as credentials_path:
            env = self._environment(credentials_path)
            code, output = self._run(self.build_command(credentials_path), path, env)
            if code == 0:
                return

            if self.fallback_available():
                fallback_code, _ = self._run(
                    self.build_command(credentials_path, fallback=True), path, env
                )
                if fallback_code == 0:
                    logger.warning(
                        f"Dump of '{self.name}' succeeded after disabling routines/triggers"
                    )
                    return

        message = f"Dump failed with return code {code}"
        if output:
            message += f"\nCommand output:\n{output}"
        raise DumpError(message, self.name)

    @contextmanager
    def open_stream(self) -> Iterator[BinaryIO]:
        with self._credentials() as credentials_path, tempfile.TemporaryFile() as stderr:
            command = self.build_command(credentials_path)
            try:
                process = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr,
                    env=self._environment(credentials_path),
                )
            except OSError as e:
                raise DumpError(f"Cannot run {command[0]}: {e}", self.name) from e

            try:
                yield process.stdout
            finally:
                process.stdout.close()
                code = process.wait()

            if code != 0:
                stderr.seek(0)
                output = stderr.read().decode("utf-8", errors="replace").strip()
                raise DumpError(
                    f"Dump stream failed with return code {code}: {output[-STDERR_TAIL_BYTES:]}",
                    self.name,
                )


# -----------------------------------------------------------------------------
# Driver Implementations
# -----------------------------------------------------------------------------


def _mysql_option(value: object) -> str:
    escaped = (
        str(value)
        .replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace('"', '\\"')
    )
    return f'"{escaped}"'


class MySqlDumpSource(CommandDumpSource):
    """mysqldump / mariadb-dump."""

    driver = DatabaseDriver.MYSQL

    @staticmethod
    def find_dump_command() -> str:
        for candidate in ("mysqldump", "mariadb-dump"):
            if shutil.which(candidate):
                return candidate
        raise DumpError(
            "Neither mysqldump nor mariadb-dump command found. "
            "Please install MySQL or MariaDB client tools."
        )

    def fallback_available(self) -> bool:
        return self.config.include_triggers or self.config.include_routines

    def _write_credentials(self, handle: BinaryIO) -> None:
        conn = self.connection
        lines = [
            "[client]",
            f"user={_mysql_option(conn.username)}",
            f"password={_mysql_option(conn.password)}",
        ]
        if conn.unix_socket:
            lines.append(f"socket={_mysql_option(conn.unix_socket)}")
        else:
            lines.append(f"host={_mysql_option(conn.host)}")
            lines.append(f"port={_mysql_option(conn.port or DEFAULT_MYSQL_PORT)}")
        handle.write(("\n".join(lines) + "\n").encode("utf-8"))

    def build_flags(self, fallback: bool = False) -> list[str]:
        flags = ["--single-transaction", "--hex-blob"]
        if fallback:
            flags.append("--skip-triggers")
            return flags
        flags.append("--triggers" if self.config.include_triggers else "--skip-triggers")
        if self.config.include_routines:
            flags.append("--routines")
        return flags

    def build_command(self, credentials_path: str, fallback: bool = False) -> list[str]:
        database = self.connection.database
        command = [
            self.find_dump_command(),
            f"--defaults-extra-file={credentials_path}",
            *self.build_flags(fallback),
            *shlex.split(self.config.extra_flags),
        ]
        if self.config.include_tables:
            command += [database, *self.config.include_tables]
        else:
            command += [f"--ignore-table={database}.{t}" for t in self.config.exclude_tables]
            command.append(database)
        return command


def _pgpass_field(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace(":", "\\:")


class PostgresDumpSource(CommandDumpSource):
    """pg_dump in plain SQL format."""

    driver = DatabaseDriver.POSTGRES

    def _write_credentials(self, handle: BinaryIO) -> None:
        conn = self.connection
        line = ":".join(
            _pgpass_field(v)
            for v in (
                conn.host,
                conn.port or DEFAULT_POSTGRES_PORT,
                conn.database,
                conn.username,
                conn.password,
            )
        )
        handle.write((line + "\n").encode("utf-8"))

    def _environment(self, credentials_path: str) -> dict[str, str]:
        return {**os.environ, "PGPASSFILE": credentials_path}

    def build_command(self, credentials_path: str, fallback: bool = False) -> list[str]:
        if not shutil.which("pg_dump"):
            raise DumpError("pg_dump command not found. Please install PostgreSQL client tools.")
        conn = self.connection
        command = [
            "pg_dump",
            f"--host={conn.host}",
            f"--port={conn.port or DEFAULT_POSTGRES_PORT}",
            f"--username={conn.username}",
            f"--dbname={conn.database}",
            "--no-owner",
            "--no-privileges",
            "--format=plain",
        ]
        if self.config.include_tables:
            for table in self.config.include_tables:
                command += ["-t", table]
        else:
            command += [f"--exclude-table={t}" for t in self.config.exclude_tables]
        return command


class SqliteDumpSource(DumpSource):
    """SQLite databases are backed up as a copy of the database file."""

    driver = DatabaseDriver.SQLITE

    @property
    def database_path(self) -> Path:
        return Path(self.connection.database).expanduser()

    def dump_to(self, path: Path) -> None:
        source = self.database_path
        if not source.is_file():
            raise DumpError(f"SQLite database file not found: {source}", self.name)
        try:
            shutil.copyfile(source, path)
        except OSError as e:
            raise DumpError(f"Failed to copy SQLite database {source}: {e}", self.name) from e

    @contextmanager
    def open_stream(self) -> Iterator[BinaryIO]:
        source = self.database_path
        try:
            handle = open(source, "rb")
        except OSError as e:
            raise DumpError(f"Cannot open SQLite database {source}: {e}", self.name) from e
        with handle:
            yield handle


DUMP_SOURCES: dict[DatabaseDriver, type[DumpSource]] = {
    DatabaseDriver.MYSQL: MySqlDumpSource,
    DatabaseDriver.POSTGRES: PostgresDumpSource,
    DatabaseDriver.SQLITE: SqliteDumpSource,
}


def create_dump_source(connection: DatabaseConnection, settings: Settings) -> DumpSource:
    """
    Build the dump source for a configured connection.

    Raises:
        ConfigurationError: If the driver is not supported.
    """
    driver = DatabaseDriver.parse(connection.driver)
    return DUMP_SOURCES[driver](connection, settings.database)
