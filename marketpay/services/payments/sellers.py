"""Seller payment configuration and Square token upkeep."""

from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select, update

from marketpay.common.clock import as_utc, utcnow
from marketpay.common.config import settings
from marketpay.common.errors import ProviderFailure
from marketpay.common.logging import logger
from marketpay.common.metrics import seller_config_fallback_total
from marketpay.services.orders.models import SellerProfile
from marketpay.services.payments.square import default_square_client_factory

PROVIDER_TYPES = ("platform", "stripe", "square")


class SellerPaymentConfig(BaseModel):
    """Provider selection and credentials assembled from a seller profile."""

    seller_id: str | None = None
    payment_provider: str = "platform"
    stripe_connected_account_id: str | None = None
    square_merchant_id: str | None = None
    square_access_token: str | None = None
    square_refresh_token: str | None = None
    square_token_expires_at: datetime | None = None
    square_location_id: str | None = None
    square_device_id: str | None = None

    @classmethod
    def from_profile(cls, profile: SellerProfile) -> "SellerPaymentConfig":
        provider = profile.payment_provider if profile.payment_provider in PROVIDER_TYPES else "platform"
        return cls(
            seller_id=profile.id,
            payment_provider=provider,
            stripe_connected_account_id=profile.stripe_connected_account_id,
            square_merchant_id=profile.square_merchant_id,
            square_access_token=profile.square_access_token,
            square_refresh_token=profile.square_refresh_token,
            square_token_expires_at=profile.square_token_expires_at,
            square_location_id=profile.square_location_id,
            square_device_id=profile.square_device_id,
        )


class SellerDirectory:
    """Read-side access to seller profiles."""

    def __init__(self, session_factory, service_name: str = "marketpay-api") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def get_profile_config(self, seller_id: str) -> SellerPaymentConfig | None:
        with self.session_factory() as db:
            profile = db.get(SellerProfile, seller_id)
            return SellerPaymentConfig.from_profile(profile) if profile else None

    def get_payment_config(self, seller_id: str) -> SellerPaymentConfig:
        """Seller config, falling back to platform payments when no profile exists."""

        config = self.get_profile_config(seller_id)
        if config is not None:
            return config
        # Platform Stripe is assumed to be a valid route for every seller.
        logger.warning("no seller profile for seller_id=%s; falling back to platform payments", seller_id)
        seller_config_fallback_total.labels(service=self.service_name).inc()
        return SellerPaymentConfig(seller_id=seller_id)

    def set_device_id(self, seller_id: str, device_id: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(SellerProfile).where(SellerProfile.id == seller_id).values(square_device_id=device_id)
            )
            db.commit()
            return result.rowcount == 1

    def square_sellers(self) -> list[SellerPaymentConfig]:
        """Every seller on Square with a stored access token."""

        with self.session_factory() as db:
            profiles = db.execute(
                select(SellerProfile)
                .where(SellerProfile.payment_provider == "square", SellerProfile.square_access_token.is_not(None))
                .order_by(SellerProfile.id)
            ).scalars().all()
            return [SellerPaymentConfig.from_profile(profile) for profile in profiles]


class SquareTokenManager:
    """Returns a usable seller access token, refreshing it shortly before expiry."""

    def __init__(
        self,
        session_factory,
        square_client_factory=default_square_client_factory,
        expiry_buffer_seconds: int | None = None,
        application_id: str | None = None,
        client_secret: str | None = None,
        platform_access_token: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.square_client_factory = square_client_factory
        self.expiry_buffer = timedelta(
            seconds=settings.square_token_expiry_buffer_seconds if expiry_buffer_seconds is None else expiry_buffer_seconds
        )
        self.application_id = settings.square_application_id if application_id is None else application_id
        self.client_secret = settings.square_client_secret if client_secret is None else client_secret
        self.platform_access_token = (
            settings.square_access_token if platform_access_token is None else platform_access_token
        )

    def is_expired(self, expires_at: datetime | None, now: datetime | None = None) -> bool:
        """Missing expiry counts as expired."""

        expires_at = as_utc(expires_at)
        if expires_at is None:
            return True
        return (now or utcnow()) >= expires_at - self.expiry_buffer

    async def get_valid_access_token(self, config: SellerPaymentConfig) -> str | None:
        if not config.square_access_token:
            return None
        if not self.is_expired(config.square_token_expires_at):
            return config.square_access_token
        if not config.square_refresh_token or not config.seller_id:
            return None
        return await self.refresh(config.seller_id, config.square_refresh_token)

    async def refresh(self, seller_id: str, refresh_token: str) -> str | None:
        if not self.client_secret or not self.application_id:
            logger.warning("square token refresh skipped for seller_id=%s: OAuth app not configured", seller_id)
            return None
        client = self.square_client_factory(self.platform_access_token)
        try:
            token = await client.refresh_token(self.application_id, self.client_secret, refresh_token)
        except ProviderFailure as exc:
            logger.error("square token refresh failed seller_id=%s: %s", seller_id, exc)
            return None
        access_token = token.get("access_token")
        if not access_token:
            return None
        expires_at = token.get("expires_at")
        with self.session_factory() as db:
            db.execute(
                update(SellerProfile)
                .where(SellerProfile.id == seller_id)
                .values(
                    square_access_token=access_token,
                    square_refresh_token=token.get("refresh_token") or refresh_token,
                    square_token_expires_at=datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
                    if expires_at
                    else None,
                )
            )
            db.commit()
        logger.info("square token refreshed seller_id=%s", seller_id)
        return access_token
