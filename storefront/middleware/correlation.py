"""Correlation ID middleware for request tracing.

Every response carries X-Request-ID. A client-supplied value is echoed back,
otherwise a UUID is generated. The structlog processor in
``storefront.core.logging`` reads the same context var, so webhook and
verification log lines can be tied to the request that produced them.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=None,
        transformer=lambda a: a,
    )


def get_correlation_id() -> str | None:
    """Current request's correlation ID, or None outside a request."""
    return correlation_id.get(None)


__all__ = ["setup_correlation_middleware", "get_correlation_id", "REQUEST_ID_HEADER"]
