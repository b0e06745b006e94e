"""Zoho Payments integration: payment sessions, payment lookups, OAuth token refresh.

Every method either returns parsed data or raises one of:
- GatewayAuthRequired: no usable service credential (carries the consent URL)
- GatewayError: non-2xx, malformed body, or transport failure/timeout

Raw gateway responses are logged here and never propagated to callers.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from storefront.core.config import Settings, get_settings
from storefront.core.exceptions import GatewayAuthRequired, GatewayError

logger = structlog.get_logger(__name__)

# Errors raised before the request reaches the gateway; safe to resend
_RETRYABLE_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


@dataclass(frozen=True)
class GatewayPayment:
    """Payment state as reported by the gateway."""

    payment_id: str | None
    session_id: str | None
    status: str | None
    amount: Decimal | None = None
    reference_number: str | None = None
    payment_method: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


def _to_decimal(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


class ZohoPaymentsClient:
    """Client for the Zoho Payments v1 API.

    One instance per application; the access token cache lives on the
    instance rather than in module globals.
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the client.

        Args:
            settings: Application settings (defaults to get_settings())
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.settings = settings or get_settings()
        self._transport = transport
        self._access_token: str | None = self.settings.zoho_access_token or None

    # ── OAuth ────────────────────────────────────────────────────────

    def authorization_url(self) -> str:
        """Consent URL an operator visits to re-authorize the service credential."""
        params = {
            "response_type": "code",
            "client_id": self.settings.zoho_client_id,
            "scope": self.settings.zoho_scopes,
            "redirect_uri": f"{self.settings.app_url}/api/auth/zoho/callback",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.settings.zoho_auth_url}?{urlencode(params)}"

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
            transport=self._transport,
        )

    async def _refresh_access_token(self, client: httpx.AsyncClient) -> str | None:
        """Exchange the configured refresh token for a new access token."""
        if not self.settings.zoho_refresh_token:
            return None

        params = {
            "refresh_token": self.settings.zoho_refresh_token,
            "client_id": self.settings.zoho_client_id,
            "client_secret": self.settings.zoho_client_secret,
            "redirect_uri": f"{self.settings.app_url}/api/auth/zoho/callback",
            "grant_type": "refresh_token",
        }
        try:
            response = await client.post(self.settings.zoho_token_url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("zoho_token_refresh_transport_error", error=str(exc), error_type=type(exc).__name__)
            return None

        if not response.is_success:
            logger.warning("zoho_token_refresh_failed", status_code=response.status_code)
            return None

        try:
            token = response.json().get("access_token")
        except ValueError:
            logger.warning("zoho_token_refresh_unparseable")
            return None

        if not token:
            logger.warning("zoho_token_refresh_missing_access_token")
            return None

        logger.info("zoho_token_refreshed")
        return token

    async def _access_token_for(self, client: httpx.AsyncClient, force_refresh: bool = False) -> str:
        if self._access_token and not force_refresh:
            return self._access_token

        token = await self._refresh_access_token(client)
        if token is None:
            self._access_token = None
            logger.error("zoho_credential_unavailable", force_refresh=force_refresh)
            raise GatewayAuthRequired(self.authorization_url())

        self._access_token = token
        return token

    # ── Transport ────────────────────────────────────────────────────

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, token: str, payload: dict | None) -> httpx.Response:
        """Send one request, retrying only failures that never reached the gateway."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RETRYABLE_TRANSPORT_ERRORS),
                stop=stop_after_attempt(self.settings.gateway_max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True,
                before_sleep=lambda rs: logger.warning(
                    "zoho_request_retrying",
                    attempt=rs.attempt_number,
                    url=url,
                ),
            ):
                with attempt:
                    return await client.request(
                        method,
                        url,
                        json=payload,
                        headers={"Authorization": f"Zoho-oauthtoken {token}"},
                    )
        except httpx.TimeoutException as exc:
            logger.error("zoho_request_timeout", url=url, error_type=type(exc).__name__)
            raise GatewayError("Payment gateway timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            logger.error("zoho_request_transport_error", url=url, error=str(exc), error_type=type(exc).__name__)
            raise GatewayError("Payment gateway unreachable", retryable=True) from exc

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        """Authenticated API call with a single forced token refresh on 401."""
        account_id = self.settings.zoho_account_id
        if not account_id:
            logger.error("zoho_account_id_missing")
            raise GatewayError("Payment gateway not configured")

        url = f"{self.settings.zoho_api_base}{path}?{urlencode({'account_id': account_id})}"

        async with self._http() as client:
            token = await self._access_token_for(client)
            response = await self._send(client, method, url, token, payload)

            if response.status_code == 401:
                logger.info("zoho_token_expired_refreshing", path=path)
                token = await self._access_token_for(client, force_refresh=True)
                response = await self._send(client, method, url, token, payload)
                if response.status_code == 401:
                    raise GatewayAuthRequired(self.authorization_url())

        if not response.is_success:
            logger.error(
                "zoho_request_failed",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(retryable=response.status_code >= 500)

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("zoho_response_unparseable", path=path, body=response.text[:500])
            raise GatewayError("Invalid response format from payment gateway") from exc

        if not isinstance(data, dict) or data.get("code") != 0:
            logger.error("zoho_response_error_code", path=path, body=str(data)[:500])
            raise GatewayError()

        return data

    # ── Public API ───────────────────────────────────────────────────

    async def create_session(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        reference_number: str | None = None,
        invoice_number: str | None = None,
        customer: dict | None = None,
    ) -> str:
        """Create a payment session and return its payments_session_id."""
        payload: dict = {
            "amount": float(amount),
            "currency": currency.upper(),
            "description": description,
        }
        if reference_number:
            payload["reference_number"] = reference_number
        if invoice_number:
            payload["invoice_number"] = invoice_number
        if customer:
            payload["meta_data"] = [
                {"key": f"customer_{key}", "value": str(value)}
                for key, value in customer.items()
                if value
            ]

        data = await self._call("POST", "/paymentsessions", payload)

        session_id = (data.get("payments_session") or {}).get("payments_session_id")
        if not session_id:
            logger.error("zoho_session_response_missing_id", body=str(data)[:500])
            raise GatewayError("Invalid session response")

        logger.info("zoho_session_created", payments_session_id=session_id, reference_number=reference_number)
        return str(session_id)

    async def get_session(self, session_id: str) -> GatewayPayment:
        """Fetch a payment session and the status of its latest payment."""
        data = await self._call("GET", f"/paymentsessions/{session_id}")
        session = data.get("payments_session")
        if not isinstance(session, dict):
            raise GatewayError("Invalid session response")

        payments = session.get("payments") or []
        first = payments[0] if payments and isinstance(payments[0], dict) else {}

        return GatewayPayment(
            payment_id=first.get("payment_id"),
            session_id=str(session.get("payments_session_id") or session_id),
            status=session.get("status") or first.get("status"),
            amount=_to_decimal(session.get("amount")),
            reference_number=session.get("reference_number"),
            payment_method=first.get("payment_method"),
            raw=data,
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a single payment by id."""
        data = await self._call("GET", f"/payments/{payment_id}")
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else data

        return GatewayPayment(
            payment_id=str(payment.get("payment_id") or payment_id),
            session_id=payment.get("payments_session_id"),
            status=payment.get("status"),
            amount=_to_decimal(payment.get("amount")),
            reference_number=payment.get("reference_number"),
            payment_method=payment.get("payment_method"),
            raw=data,
        )
