"""Entry point for ``python -m scriptbridge``."""

from scriptbridge.cli.commands import app

if __name__ == "__main__":
    app()
