#!/usr/bin/env python3
"""
Command-line interface entry point for the tmbackup package.

This module allows the package to be executed as a script using:
python -m tmbackup
"""

import sys
from .cli import main


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
