"""Module entrypoint for ``python -m b2d``."""

import sys

from b2d import cli

sys.exit(cli.main())
