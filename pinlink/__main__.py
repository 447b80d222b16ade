"""Entry point for running pinlink as a module: python -m pinlink"""

from pinlink.cli.commands import app

if __name__ == "__main__":
    app()
