"""SessionService: creates gateway payment sessions from server-side prices."""

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import get_settings
from storefront.core.exceptions import OutOfStock, ProductNotFound, ShippingMismatch
from storefront.db.models.product import Product
from storefront.domain.shipping import ShippingRules, calculate_shipping, shipping_matches, to_money
from storefront.integrations.zoho import ZohoPaymentsClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    product_name: str
    quantity: int
    price: Decimal
    total: Decimal


@dataclass(frozen=True)
class SessionRequest:
    items: list[CartLine]
    shipping_charge: Decimal
    state: str | None
    description: str
    currency: str = "INR"
    reference_number: str | None = None
    invoice_number: str | None = None
    customer: dict | None = None


@dataclass(frozen=True)
class SessionResult:
    payments_session_id: str
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    items: list[PricedLine]


class SessionService:
    """Prices a cart from the catalog and opens a gateway payment session.

    Nothing is persisted; the session id is handed back for the client to
    drive the hosted widget.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ZohoPaymentsClient,
        rules: ShippingRules | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.rules = rules or ShippingRules.from_settings(get_settings())

    async def price_cart(self, items: list[CartLine]) -> list[PricedLine]:
        """Price cart lines from authoritative product rows.

        Raises:
            ProductNotFound: A line references an unknown product
            OutOfStock: Live stock cannot cover the cart's total quantity of a product
        """
        requested = Counter()
        for line in items:
            requested[line.product_id] += line.quantity

        async with self.session_factory() as session:
            result = await session.execute(select(Product).where(Product.id.in_(list(requested))))
            products = {p.id: p for p in result.scalars().all()}

        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                raise ProductNotFound(product_id)
            if not product.in_stock or product.stock_quantity < quantity:
                raise OutOfStock(product_id)

        priced = []
        for line in items:
            product = products[line.product_id]
            price = to_money(product.price)
            priced.append(
                PricedLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line.quantity,
                    price=price,
                    total=to_money(price * line.quantity),
                )
            )
        return priced

    async def create_session(self, request: SessionRequest) -> SessionResult:
        """Recompute totals server-side and create the gateway session.

        Raises:
            ProductNotFound, OutOfStock: Cart cannot be fulfilled
            ShippingMismatch: Declared shipping differs from the recomputed charge
            GatewayAuthRequired, GatewayError: Propagated from the gateway client
        """
        priced = await self.price_cart(request.items)
        subtotal = to_money(sum((line.total for line in priced), Decimal("0")))
        shipping = calculate_shipping(request.state, subtotal, self.rules)

        if not shipping_matches(request.shipping_charge, shipping, self.rules):
            logger.warning(
                "shipping_charge_mismatch",
                declared=str(request.shipping_charge),
                expected=str(shipping),
                state=request.state,
                reference_number=request.reference_number,
            )
            raise ShippingMismatch(to_money(request.shipping_charge), shipping)

        total = to_money(subtotal + shipping)
        session_id = await self.gateway.create_session(
            amount=total,
            currency=request.currency,
            description=request.description,
            reference_number=request.reference_number,
            invoice_number=request.invoice_number,
            customer=request.customer,
        )

        logger.info(
            "payment_session_initiated",
            payments_session_id=session_id,
            subtotal=str(subtotal),
            shipping=str(shipping),
            total=str(total),
        )
        return SessionResult(
            payments_session_id=session_id,
            subtotal=subtotal,
            shipping=shipping,
            total=total,
            items=priced,
        )
