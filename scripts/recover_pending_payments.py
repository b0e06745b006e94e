"""Settle online-payment orders stuck in pending after the widget was closed.

Re-reads each stale order's payment session from Zoho and applies the same
conditional transition the webhook uses. Safe to run from cron while the
API is serving traffic.

Usage:
    python -m scripts.recover_pending_payments [--older-than MINUTES] [--limit N]
"""

import argparse
import asyncio
from datetime import timedelta

from storefront.core.logging import configure_structlog
from storefront.core.config import get_settings

configure_structlog(log_level="INFO", json_logs=False)

from storefront.core.exceptions import GatewayAuthRequired  # noqa: E402
from storefront.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis  # noqa: E402
from storefront.integrations.zoho import ZohoPaymentsClient  # noqa: E402
from storefront.notifications.queue import NotificationWorker  # noqa: E402
from storefront.services.recovery_service import RecoveryService  # noqa: E402


async def main(older_than: int, limit: int) -> int:
    settings = get_settings()
    await init_db(create_tables=False)
    await init_redis()

    service = RecoveryService(get_session_factory(), ZohoPaymentsClient(settings))
    try:
        report = await service.recover_stale_orders(older_than=timedelta(minutes=older_than), limit=limit)
        sent = await NotificationWorker(get_redis()).drain(limit)
    except GatewayAuthRequired as e:
        print(f"Gateway authorization required. Re-authorize at:\n  {e.reauth_url}")
        return 1
    finally:
        await close_redis()
        await close_db()

    print(
        f"Checked {report.checked} order(s): {report.confirmed} confirmed, {report.failed} failed, "
        f"{report.unresolved} still pending, {report.errors} gateway error(s). "
        f"{sent} queued notification(s) processed."
    )
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--older-than", type=int, default=get_settings().recovery_min_age_minutes)
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(main(args.older_than, args.limit)))
