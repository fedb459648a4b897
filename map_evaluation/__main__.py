"""Allow ``python -m map_evaluation``."""

import sys

from .cli import main

sys.exit(main())
