# file: scripts/watch_notification.py

import argparse
import asyncio
import os
import sys

# Add the project root to the Python path to allow absolute imports from the 'app' package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from app.models.notification import NotificationStatus
from app.services.progress_poller import ProgressPoller, COMPLETED


def render(status: NotificationStatus) -> None:
    stats = status.stats
    line = (f"[{status.status:>10}] {status.progress:3d}% "
            f"total={stats.total} sent={stats.sent} failed={stats.failed} remaining={stats.remaining}")
    print(line, flush=True)


def main() -> int:
    parser = argparse.ArgumentParser(description="Follow the delivery progress of a batch notification.")
    parser.add_argument("notification_id", type=int)
    parser.add_argument("--base-url", default=os.getenv("NOTIFY_API_URL", "http://localhost:8000"))
    parser.add_argument("--interval", type=float, default=2.0)
    parser.add_argument("--timeout", type=float, default=300.0)
    args = parser.parse_args()

    poller = ProgressPoller(
        args.base_url,
        args.notification_id,
        interval=args.interval,
        max_duration=args.timeout,
        grace_period=0,
        on_update=render,
    )
    state = asyncio.run(poller.run())
    if state != COMPLETED:
        print(f"Gave up waiting for notification {args.notification_id}; it may still be sending.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
