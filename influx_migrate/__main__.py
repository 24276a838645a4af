"""
influx-migrate Entry Point
==========================
Allows running the CLI as: python -m influx_migrate
"""

import sys

from influx_migrate.cli import main

if __name__ == "__main__":
    sys.exit(main())
