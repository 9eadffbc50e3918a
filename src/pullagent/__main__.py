"""Entry point for ``python -m pullagent``."""

import sys

from pullagent.cli import main

if __name__ == "__main__":
    sys.exit(main())
