"""Entry point for running mcpgate as a module: python -m mcpgate."""

from mcpgate.cli.commands import app

if __name__ == "__main__":
    app()
