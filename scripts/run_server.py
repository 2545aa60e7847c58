#!/usr/bin/env python3
"""Start the inventory API from a source checkout.

Set ``MIGRATE_ON_START=true`` to bring the schema to head before serving,
which is what the container entrypoint does.
"""

import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from scripts.ops.migrate import upgrade  # noqa: E402
from src.admin.server import main  # noqa: E402

if __name__ == "__main__":
    if os.environ.get("MIGRATE_ON_START", "false").lower() == "true":
        upgrade()
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
