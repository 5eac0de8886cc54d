"""Allow ``python -m cloudauth``."""

import sys

from .cli import main


sys.exit(main())
