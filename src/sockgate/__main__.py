"""Allow ``python -m sockgate``."""

import sys

from .server import main

sys.exit(main())
