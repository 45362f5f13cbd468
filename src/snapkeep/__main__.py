"""Main entry point for ``python -m snapkeep``."""

from .cli import app


def main():
    """Run the snapkeep command-line interface."""
    app()


if __name__ == "__main__":
    main()
