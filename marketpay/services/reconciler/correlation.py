"""Ordered correlation of payment events to local orders.

Each strategy answers "which order is this?" from one kind of evidence and
returns None when its evidence is absent or points nowhere. The correlator
tries them in a fixed order and the first hit wins, so cheap local lookups
run before remote calls and the seller scan runs last.
"""

from marketpay.common.config import settings
from marketpay.common.errors import ProviderFailure
from marketpay.common.logging import logger
from marketpay.common.metrics import correlation_total
from marketpay.services.orders.service import OrderService
from marketpay.services.payments.sellers import SellerDirectory, SquareTokenManager
from marketpay.services.payments.square import default_square_client_factory
from marketpay.services.webhooks.parsing import TERMINAL_CHECKOUT_COMPLETED, NormalizedPaymentEvent


async def _remote_order_reference(client, provider_order_id: str) -> str | None:
    remote_order = await client.get_order(provider_order_id)
    metadata = remote_order.get("metadata") or {}
    return metadata.get("orderId") or remote_order.get("reference_id")


class ProviderPaymentIdStrategy:
    name = "provider_payment_id"

    def __init__(self, orders: OrderService) -> None:
        self.orders = orders

    async def resolve(self, event: NormalizedPaymentEvent) -> str | None:
        if not event.provider_payment_id:
            return None
        return self.orders.find_by_payment_intent(event.provider_payment_id)


class ReferenceIdStrategy:
    name = "reference_id"

    def __init__(self, orders: OrderService) -> None:
        self.orders = orders

    async def resolve(self, event: NormalizedPaymentEvent) -> str | None:
        if not event.reference_id:
            return None
        return event.reference_id if self.orders.order_exists(event.reference_id) else None


class RemoteOrderMetadataStrategy:
    """Ask Square for the order behind the payment using the platform token."""

    name = "remote_order_metadata"

    def __init__(self, orders: OrderService, square_client_factory, platform_access_token: str | None = None) -> None:
        self.orders = orders
        self.square_client_factory = square_client_factory
        self.platform_access_token = (
            settings.square_access_token if platform_access_token is None else platform_access_token
        )

    async def resolve(self, event: NormalizedPaymentEvent) -> str | None:
        if event.provider != "square" or not event.provider_order_id or not self.platform_access_token:
            return None
        client = self.square_client_factory(self.platform_access_token)
        try:
            order_id = await _remote_order_reference(client, event.provider_order_id)
        except ProviderFailure as exc:
            # Seller-account orders are not visible to the platform token.
            logger.info("platform lookup of square order %s failed: %s", event.provider_order_id, exc)
            return None
        if order_id and self.orders.order_exists(order_id):
            return order_id
        return None


class PaymentSessionStrategy:
    name = "payment_session_id"

    def __init__(self, orders: OrderService) -> None:
        self.orders = orders

    async def resolve(self, event: NormalizedPaymentEvent) -> str | None:
        for session_id in event.session_ids:
            order_id = self.orders.find_by_session(session_id, provider=event.provider)
            if order_id:
                return order_id
        for session_id in event.session_ids:
            order_id = self.orders.find_by_session(session_id)
            if order_id:
                return order_id
        return None


class SellerAccountScanStrategy:
    """Try every connected Square seller's token against the remote order.

    Linear in the number of sellers; only reached when nothing else matched.
    """

    name = "seller_account_scan"

    def __init__(
        self,
        orders: OrderService,
        sellers: SellerDirectory,
        tokens: SquareTokenManager,
        square_client_factory,
    ) -> None:
        self.orders = orders
        self.sellers = sellers
        self.tokens = tokens
        self.square_client_factory = square_client_factory

    async def resolve(self, event: NormalizedPaymentEvent) -> str | None:
        if event.provider != "square" or not event.provider_order_id:
            return None
        for config in self.sellers.square_sellers():
            token = await self.tokens.get_valid_access_token(config)
            if not token:
                continue
            try:
                order_id = await _remote_order_reference(self.square_client_factory(token), event.provider_order_id)
            except ProviderFailure:
                continue
            if order_id and self.orders.order_exists(order_id):
                logger.info("square order %s resolved through seller_id=%s", event.provider_order_id, config.seller_id)
                return order_id
        return None


class Correlator:
    def __init__(self, strategies, terminal_strategies, service_name: str = "marketpay-reconciler") -> None:
        self.strategies = list(strategies)
        self.terminal_strategies = list(terminal_strategies)
        self.service_name = service_name

    @classmethod
    def default(
        cls,
        orders: OrderService,
        sellers: SellerDirectory,
        tokens: SquareTokenManager,
        square_client_factory=default_square_client_factory,
        platform_access_token: str | None = None,
        service_name: str = "marketpay-reconciler",
    ) -> "Correlator":
        return cls(
            strategies=[
                ProviderPaymentIdStrategy(orders),
                ReferenceIdStrategy(orders),
                RemoteOrderMetadataStrategy(orders, square_client_factory, platform_access_token),
                PaymentSessionStrategy(orders),
                SellerAccountScanStrategy(orders, sellers, tokens, square_client_factory),
            ],
            terminal_strategies=[PaymentSessionStrategy(orders)],
            service_name=service_name,
        )

    async def correlate(self, event: NormalizedPaymentEvent) -> tuple[str | None, str | None]:
        """Return `(order_id, strategy_name)`, or `(None, None)` when nothing matched."""

        strategies = self.terminal_strategies if event.kind == TERMINAL_CHECKOUT_COMPLETED else self.strategies
        for strategy in strategies:
            order_id = await strategy.resolve(event)
            if order_id:
                correlation_total.labels(
                    service=self.service_name, provider=event.provider, strategy=strategy.name
                ).inc()
                return order_id, strategy.name
        correlation_total.labels(service=self.service_name, provider=event.provider, strategy="none").inc()
        return None, None
