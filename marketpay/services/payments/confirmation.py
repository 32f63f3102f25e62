"""Confirm-on-read for Square payment links.

When the buyer lands on the success page the webhook may not have arrived
yet, or cannot arrive at all (no public endpoint in local development). The
status poll asks Square directly and applies the same idempotent mark-paid the
webhook path uses, so running both is harmless.
"""

import asyncio

from marketpay.common.config import settings
from marketpay.common.errors import ProviderFailure, StateConflict
from marketpay.common.logging import logger
from marketpay.common.state_machine import PENDING_PAYMENT
from marketpay.services.orders.service import OrderService
from marketpay.services.payments.sellers import SellerDirectory, SquareTokenManager
from marketpay.services.payments.square import default_square_client_factory


def remote_order_is_paid(remote_order: dict) -> bool:
    """A closed order and an order carrying tenders are equally good evidence.

    Tenders can show up slightly before Square flips the order to COMPLETED.
    """

    return remote_order.get("state") == "COMPLETED" or bool(remote_order.get("tenders"))


def tender_payment_id(remote_order: dict) -> str | None:
    tenders = remote_order.get("tenders") or []
    if not tenders:
        return None
    return tenders[0].get("payment_id") or tenders[0].get("id")


class SquarePaymentConfirmer:
    def __init__(
        self,
        orders: OrderService,
        sellers: SellerDirectory,
        tokens: SquareTokenManager,
        square_client_factory=default_square_client_factory,
        retry_delays: list[float] | None = None,
        enabled: bool | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.orders = orders
        self.sellers = sellers
        self.tokens = tokens
        self.square_client_factory = square_client_factory
        self.retry_delays = list(settings.status_confirm_retry_delays if retry_delays is None else retry_delays)
        self.enabled = settings.status_confirm_on_read if enabled is None else enabled
        self.sleep = sleep

    async def confirm_if_paid(self, order_id: str) -> bool:
        """Return True when this call (or a racing writer) left the order PAID."""

        if not self.enabled:
            return False
        order = self.orders.get_order(order_id)
        if order.status != PENDING_PAYMENT or order.payment_provider != "square" or not order.payment_session_id:
            return False
        if order.payment_session_id == order.terminal_checkout_id:
            # Terminal checkouts are settled by webhook or the terminal status poll.
            return False

        seller_id = order.seller_session.seller_id if order.seller_session else None
        config = self.sellers.get_profile_config(seller_id) if seller_id else None
        if config is None or not config.square_access_token:
            logger.info("confirm-on-read skipped order_id=%s: seller has no Square token", order_id)
            return False
        token = await self.tokens.get_valid_access_token(config)
        if not token:
            logger.info("confirm-on-read skipped order_id=%s: Square token expired", order_id)
            return False

        client = self.square_client_factory(token)
        for attempt, delay in enumerate([0.0, *self.retry_delays]):
            if delay:
                await self.sleep(delay)
            try:
                link = await client.get_payment_link(order.payment_session_id)
                remote_order_id = link.get("order_id")
                if not remote_order_id:
                    logger.info("payment link %s has no order yet order_id=%s", order.payment_session_id, order_id)
                    continue
                remote_order = await client.get_order(remote_order_id)
            except ProviderFailure as exc:
                logger.warning("confirm-on-read failed order_id=%s attempt=%s: %s", order_id, attempt, exc)
                return False
            if not remote_order_is_paid(remote_order):
                logger.info(
                    "square order %s not paid yet state=%s tenders=%s attempt=%s",
                    remote_order_id,
                    remote_order.get("state"),
                    len(remote_order.get("tenders") or []),
                    attempt,
                )
                continue
            try:
                self.orders.mark_paid(
                    order_id,
                    source="status_poll",
                    provider="square",
                    provider_payment_id=tender_payment_id(remote_order),
                )
            except StateConflict as exc:
                logger.warning("confirm-on-read could not mark order_id=%s paid: %s", order_id, exc)
                return False
            return True
        return False
