"""
Main entry point for sqlscout: python -m sqlscout
"""
import sys

from sqlscout.cli import main


def main_entry():
    """Runs the command line interface and exits with its status code."""
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
