"""Main entry point for the Moltbot fleet manager."""

import sys

from .cli import cli


def main():
    """Main entry point."""
    try:
        cli(prog_name="moltbot-fleet")
    except KeyboardInterrupt:
        print("\nExiting...", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
