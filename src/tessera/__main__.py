"""
Entry point for running Tessera as a module.

Usage:
    python -m tessera [command] [options]
"""

from tessera.cli import main

if __name__ == "__main__":
    main()
