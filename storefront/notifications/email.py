"""Order confirmation email rendering and delivery via SendGrid.

The SendGrid SDK is synchronous, so sends are dispatched to a thread pool
to keep the event loop free.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from html import escape

import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from storefront.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sendgrid")


class EmailDeliveryError(Exception):
    """Raised when the mail provider rejects or cannot accept a message."""

    pass


def _money(value) -> str:
    try:
        return f"₹{Decimal(str(value)):.2f}"
    except ArithmeticError:
        return "₹0.00"


def render_order_confirmation(event: dict, app_url: str) -> tuple[str, str]:
    """Render (subject, html) for an order.confirmed event."""
    order_id = event.get("order_id")
    name = escape(event.get("customer_name") or "there")

    rows = "".join(
        f'<tr><td style="padding:6px 0">{escape(str(item["name"]))} × {item["qty"]}</td>'
        f'<td style="padding:6px 0;text-align:right">{_money(Decimal(str(item["price"])) * item["qty"])}</td></tr>'
        for item in event.get("items", [])
    )
    total_row = ""
    if event.get("total") is not None:
        total_row = (
            '<tr><td style="padding-top:8px;border-top:1px solid #eee;font-weight:600">Total</td>'
            f'<td style="padding-top:8px;border-top:1px solid #eee;text-align:right;font-weight:700">'
            f"{_money(event['total'])}</td></tr>"
        )

    html = f"""
<div style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto">
  <div style="background:#0a7e3a;padding:24px;text-align:center">
    <img src="{escape(app_url)}/logo.png" alt="Dhanya Naturals" style="height:60px" />
    <h1 style="color:#fff;margin:12px 0 0">Dhanya Naturals</h1>
  </div>
  <div style="padding:32px 24px">
    <h2 style="color:#0a7e3a">Order Placed Successfully</h2>
    <p>Hi {name}, your payment was received and your order is now being processed.</p>
    <p><strong>Order #{order_id}</strong> • Confirmed</p>
    <table style="width:100%;border-collapse:collapse">{rows}{total_row}</table>
  </div>
  <div style="background:#f8f9fa;padding:16px;text-align:center;font-size:12px;color:#777">
    © {datetime.now(timezone.utc).year} Dhanya Naturals. All rights reserved.
  </div>
</div>"""

    return f"Your order #{order_id} has been placed", html


class SendGridEmailSender:
    """Sends transactional email through SendGrid."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def _send_sync(self, to: str, subject: str, html: str) -> None:
        if not self.settings.sendgrid_api_key:
            raise EmailDeliveryError("SENDGRID_API_KEY not configured")

        message = Mail(
            from_email=self.settings.email_from,
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        response = SendGridAPIClient(self.settings.sendgrid_api_key).send(message)
        if response.status_code >= 300:
            raise EmailDeliveryError(f"SendGrid returned {response.status_code}")

    async def send(self, to: str, subject: str, html: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, self._send_sync, to, subject, html)
        logger.info("email_sent", subject=subject)
