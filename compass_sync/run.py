"""Entry point: ``python -m compass_sync.run``

Runs one synchronisation pass (or a polling loop when POLL_INTERVAL_S > 0)
and writes the composed notifications to COMPASS_OUTBOX_PATH.

Environment variables:
    COMPASS_HOSTNAME          school host, e.g. example-ps-vic.compass.education
    COMPASS_USERNAME
    COMPASS_PASSWORD
    COMPASS_STORAGE=json      (or "sqlite")
"""

from __future__ import annotations

import logging
import sys

from .config import Config
from .exceptions import CompassError
from .pipeline import run_pipeline


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    cfg = Config()
    logging.getLogger(__name__).info(
        "Host: %s, storage: %s", cfg.hostname or "<unset>", cfg.storage,
    )
    try:
        run_pipeline(cfg)
    except CompassError as exc:
        logging.getLogger(__name__).error("Sync failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
