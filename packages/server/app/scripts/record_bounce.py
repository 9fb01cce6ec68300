"""
Script to record a bounce by hand, e.g. for a report that never reached the webhook.

    python -m app.scripts.record_bounce --path user@example.com --permanent
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone

from app.api.deps import get_lifecycle_manager
from app.core.config import get_settings
from app.core.database import close_db
from app.core.logging_config import configure_logging
from app.core.redis import close_redis

settings = get_settings()


async def record(
    path: str,
    path_type: str,
    *,
    permanent: bool,
    suppression: bool,
    details: dict | None,
    timestamp: datetime,
) -> int:
    manager = await get_lifecycle_manager()
    try:
        return await manager.record_bounce(
            path,
            path_type,
            timestamp,
            details,
            permanent=permanent,
            suppression=suppression,
        )
    finally:
        await close_redis()
        await close_db()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Record a bounce against every channel on a path.")
    parser.add_argument("--path", required=True, help="Address or number that bounced")
    parser.add_argument("--path-type", default="email", help="Channel path type (default: email)")
    kind = parser.add_mutually_exclusive_group()
    kind.add_argument("--permanent", action="store_true", help="Hard bounce: counts toward retirement")
    kind.add_argument("--suppression", action="store_true", help="Provider suppression-list bounce")
    parser.add_argument("--details", help="Provider bounce details as a JSON object")
    parser.add_argument(
        "--timestamp",
        type=datetime.fromisoformat,
        default=None,
        help="ISO-8601 time of the bounce (default: now)",
    )
    args = parser.parse_args(argv)

    details = json.loads(args.details) if args.details else None
    timestamp = args.timestamp or datetime.now(timezone.utc)

    configure_logging(settings.log_level, "text")
    updated = asyncio.run(
        record(
            args.path,
            args.path_type,
            permanent=args.permanent,
            suppression=args.suppression,
            details=details,
            timestamp=timestamp,
        )
    )
    print(f"Updated {updated} communication channel(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
