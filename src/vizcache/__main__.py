"""Entry point for running vizcache as a module."""

from .cli import app


def main() -> None:
    """Main entry point for the vizcache CLI application."""
    app()


if __name__ == "__main__":
    main()
