"""Run one expiry sweep against the configured database (cron entrypoint)."""

import argparse
import json
from datetime import datetime

from skillswap.common.config import settings
from skillswap.common.logging import configure_logging
from skillswap.common.startup import log_startup_config
from skillswap.services.api.deps import get_services


def main() -> None:
    parser = argparse.ArgumentParser(description="Release holds on requests older than the reservation timeout.")
    parser.add_argument("--now", type=datetime.fromisoformat, default=None, help="ISO timestamp to sweep as of")
    args = parser.parse_args()

    configure_logging()
    log_startup_config(settings.service_name, ["POSTGRES_DSN", "RESERVATION_TIMEOUT_HOURS", "SWEEP_BATCH_SIZE"])
    report = get_services().sweeper.sweep_expired(now=args.now)
    print(json.dumps(report.as_dict(), indent=2))


if __name__ == "__main__":
    main()
