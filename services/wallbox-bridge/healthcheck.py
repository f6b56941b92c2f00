"""Container HEALTHCHECK script for wallbox-bridge.

The polling loop touches /app/data/healthcheck on every tick. A missing or
stale file (older than 2 minutes) means the loop is stuck: exit code 1.
"""

import sys
import time
from pathlib import Path

HEALTHCHECK_FILE = Path("/app/data/healthcheck")
MAX_AGE_SECONDS = 120


def main() -> None:
    try:
        last_ts = float(HEALTHCHECK_FILE.read_text().strip())
    except (ValueError, OSError):
        sys.exit(1)

    sys.exit(0 if time.time() - last_ts <= MAX_AGE_SECONDS else 1)


if __name__ == "__main__":
    main()
