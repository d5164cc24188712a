"""Allow running the dashboard via ``python -m scan_dashboard``."""

import sys

from scan_dashboard.cli import main

sys.exit(main())
