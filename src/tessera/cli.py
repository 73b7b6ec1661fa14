"""
Command-line interface for Tessera.

Provides commands to run backups (direct or chunked), verify local archives,
audit uploaded archives, decrypt archives and extract them.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import zipfile
from pathlib import Path
from typing import Any, NoReturn

from tessera import __version__
from tessera.config.settings import ConfigurationError, Settings, load_config

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False


def set_output_mode(quiet: bool = False) -> None:
    """Set the output mode for the CLI."""
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def output_json(data: dict[str, Any]) -> None:
    output(json.dumps(data, indent=2, default=str), force=True)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Tessera CLI."""
    parser = argparse.ArgumentParser(
        prog="tessera",
        description="Portable backup archives from database dumps and filesystem trees",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"tessera {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.tessera/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create and upload a backup archive",
        description="Dump databases, archive files, verify and upload the result.",
    )
    backup_parser.add_argument(
        "--chunked",
        action="store_true",
        help="Stream chunks to storage instead of building the archive locally",
    )
    backup_parser.add_argument(
        "--encrypt",
        action="store_true",
        help="Encrypt every archive entry (needs TESSERA_BACKUP_PASSWORD)",
    )
    backup_parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip the post-build integrity check",
    )
    backup_parser.add_argument(
        "--compression-level",
        type=int,
        metavar="N",
        help="DEFLATE level 1-9 (default: from config)",
    )
    backup_parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a local archive against its manifest",
        description="Check every manifest entry of an archive for presence, size and SHA-256.",
    )
    verify_parser.add_argument("archive", metavar="ARCHIVE", help="Path to the archive")
    verify_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    verify_parser.set_defaults(func=cmd_verify)

    # audit command
    audit_parser = subparsers.add_parser(
        "audit",
        help="Verify archives already uploaded to storage",
        description="Download archives from storage and verify them. "
        "Without NAME, every archive below the backup path is audited.",
    )
    audit_parser.add_argument("name", metavar="NAME", nargs="?", help="Storage key of the archive")
    audit_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    audit_parser.set_defaults(func=cmd_audit)

    # decrypt command
    decrypt_parser = subparsers.add_parser(
        "decrypt",
        help="Decrypt an encrypted archive or envelope file",
        description="Write a plaintext copy of an encrypted archive (or of a single "
        "envelope-encrypted file).",
    )
    decrypt_parser.add_argument("input", metavar="IN", help="Encrypted input file")
    decrypt_parser.add_argument("output", metavar="OUT", help="Plaintext output file")
    decrypt_parser.set_defaults(func=cmd_decrypt)

    # extract command
    extract_parser = subparsers.add_parser(
        "extract",
        help="Extract an archive into a directory",
        description="Extract every entry, decrypting encrypted entries.",
    )
    extract_parser.add_argument("archive", metavar="ARCHIVE", help="Path to the archive")
    extract_parser.add_argument("directory", metavar="DIR", help="Target directory")
    extract_parser.set_defaults(func=cmd_extract)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _optional_encryption(settings: Settings):
    """EncryptionManager when a password is configured, otherwise None."""
    from tessera.security import EncryptionManager

    if not settings.security.backup_password:
        return None
    return EncryptionManager.from_settings(settings)


def _print_verification(result) -> None:
    output(f"  Status: {result.status}")
    output(f"  Entries checked: {result.checked}")
    output(f"  Entries failed: {result.failed}")
    output(f"  Duration: {result.duration_seconds}s")
    for error in result.errors:
        output(f"    - {error}")


def cmd_backup(args: argparse.Namespace) -> int:
    """Run one backup."""
    from tessera.backup import BackupService, ChunkedBackupService, format_bytes

    settings = _load_settings(args)
    if args.encrypt:
        settings = settings.with_encryption(True)
    if args.no_verify:
        settings = settings.with_verification(False)
    if args.compression_level is not None:
        settings = settings.with_compression_level(args.compression_level)

    service_class = ChunkedBackupService if args.chunked else BackupService
    mode = "chunked" if args.chunked else "direct"

    output(f"Tessera Backup ({mode})")
    output("=" * 50)
    output()

    result = service_class(settings).run()

    if args.json:
        output_json(result.to_dict())
        return 0 if result.success else 1

    if not result.success:
        output()
        output_error(f"Backup failed: {result.error}")
        return 1

    output("Backup created successfully!")
    output()
    output(f"  Archive: {result.archive_path}")
    output(f"  Size: {result.size_bytes:,} bytes ({format_bytes(result.size_bytes)})")
    output(f"  Entries: {result.manifest_entry_count}")
    if args.chunked:
        output(f"  Chunks: {result.chunk_count}")
    if result.skipped_connections:
        output(f"  Skipped databases: {', '.join(result.skipped_connections)}")
    if result.verification is not None:
        output(f"  Verification: {result.verification.status}")
    output(f"  Duration: {result.duration_seconds}s")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a local archive."""
    from tessera.archive import IntegrityVerifier
    from tessera.backup import IntegrityMonitor
    from tessera.storage import create_storage

    settings = _load_settings(args)
    verifier = IntegrityVerifier(_optional_encryption(settings))
    result = IntegrityMonitor(create_storage(settings), verifier).verify_local(
        args.archive, trigger="manual"
    )

    if args.json:
        output_json(result.to_dict())
    else:
        output(f"Verification of {args.archive}")
        _print_verification(result)
    return 0 if result.passed else 1


def cmd_audit(args: argparse.Namespace) -> int:
    """Verify uploaded archives."""
    from tessera.archive import IntegrityVerifier
    from tessera.backup import IntegrityMonitor
    from tessera.storage import create_storage

    settings = _load_settings(args)
    verifier = IntegrityVerifier(_optional_encryption(settings))
    monitor = IntegrityMonitor(create_storage(settings), verifier)

    if args.name:
        results = {args.name: monitor.verify_remote(args.name, trigger="manual")}
    else:
        results = monitor.audit(settings.storage.backup_path.strip("/"), trigger="scheduled")

    if args.json:
        output_json({name: result.to_dict() for name, result in results.items()})
    else:
        if not results:
            output("No archives found.")
        for name, result in results.items():
            output(f"{name}")
            _print_verification(result)
            output()

    return 0 if all(result.passed for result in results.values()) else 1


def cmd_decrypt(args: argparse.Namespace) -> int:
    """Write a plaintext copy of an encrypted archive or envelope file."""
    from tessera.archive import ArchiveReader, ArchiveWriter
    from tessera.security import EncryptionManager

    settings = _load_settings(args)
    encryption = EncryptionManager.from_settings(settings)
    encryption.require_key()
    source = Path(args.input)
    target = Path(args.output)

    if not zipfile.is_zipfile(source):
        metadata = encryption.decrypt_file(source, target)
        output(f"Decrypted {source} -> {target} (key {metadata['key_id']})")
        return 0

    with ArchiveReader(source, encryption) as reader, ArchiveWriter(
        target, settings.backup.compression_level
    ) as writer:
        for name in reader.names():
            with reader.open_entry(name) as stream:
                writer.add_stream(name, stream)
        count = len(writer.entry_names)

    output(f"Decrypted {count} entries: {source} -> {target}")
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    """Extract an archive into a directory."""
    from tessera.archive import ArchiveReader

    settings = _load_settings(args)
    with ArchiveReader(args.archive, _optional_encryption(settings)) as reader:
        extracted = reader.extract_to(args.directory)

    output(f"Extracted {len(extracted)} entries to {args.directory}")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Tessera CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
