"""FastAPI dependencies that assemble the payment services per request.

The gateway client (and its token cache) lives on ``app.state`` so every
handler receives it explicitly instead of reaching for module globals.
"""

from fastapi import Depends, Request

from storefront.core.config import get_settings
from storefront.db.base import get_session_factory
from storefront.integrations.zoho import ZohoPaymentsClient
from storefront.services.session_service import SessionService
from storefront.services.verification_service import VerificationService
from storefront.services.webhook_service import WebhookService


def get_gateway(request: Request) -> ZohoPaymentsClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = ZohoPaymentsClient(get_settings())
        request.app.state.gateway = gateway
    return gateway


def get_session_service(gateway: ZohoPaymentsClient = Depends(get_gateway)) -> SessionService:
    return SessionService(get_session_factory(), gateway)


def get_verification_service(gateway: ZohoPaymentsClient = Depends(get_gateway)) -> VerificationService:
    return VerificationService(get_session_factory(), gateway)


def get_webhook_service() -> WebhookService:
    return WebhookService(get_session_factory(), get_settings().zoho_webhook_secret)
