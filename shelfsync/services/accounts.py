"""User, shop, customer and driver records.

These collections carry no meaningful embedding; their points use the
deterministic placeholder vector seeded by the record key.
"""

from __future__ import annotations

import logging

from ..gateway import StoreGateway
from ..models import CustomerRecord, DriverRecord, ShopRecord, UserProfile
from ..queries import match
from ..vector_store import VectorStoreError

logger = logging.getLogger("shelfsync.services.accounts")


class AccountDirectory:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def upsert_user_profile(self, profile: UserProfile) -> UserProfile:
        """Persist a user profile without clobbering verification flags.

        Flags left as ``None`` on ``profile`` keep whatever the stored
        profile already has.
        """
        if profile.is_verified is None or profile.is_driver_verified is None:
            existing = await self._gateway.retrieve(UserProfile, profile.user_id)
            if existing is not None:
                profile = profile.model_copy(
                    update={
                        "is_verified": profile.is_verified
                        if profile.is_verified is not None
                        else existing.is_verified,
                        "is_driver_verified": profile.is_driver_verified
                        if profile.is_driver_verified is not None
                        else existing.is_driver_verified,
                    }
                )
        await self._gateway.upsert(profile)
        return profile

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        return await self._gateway.retrieve(UserProfile, user_id)

    async def upsert_shop_record(self, shop: ShopRecord) -> ShopRecord:
        await self._gateway.upsert(shop)
        logger.info("Stored shop %s (%s)", shop.shop_id, shop.name)
        return shop

    async def list_shops(self, user_id: str | None = None) -> list[ShopRecord]:
        shops = await self._gateway.fetch_all(ShopRecord)
        if user_id is not None:
            shops = [shop for shop in shops if shop.user_id == user_id]
        return sorted(shops, key=lambda shop: shop.name.lower())

    async def validate_shop_exists(self, shop_id: str) -> ShopRecord | None:
        """Point lookup of a shop; None when absent or the store is unreachable."""
        try:
            return await self._gateway.retrieve(ShopRecord, shop_id)
        except VectorStoreError as e:
            logger.warning("Could not validate shop %s: %s", shop_id, e)
            return None

    async def upsert_customer_record(self, customer: CustomerRecord) -> CustomerRecord:
        await self._gateway.upsert(customer)
        return customer

    async def upsert_driver_record(self, driver: DriverRecord) -> DriverRecord:
        await self._gateway.upsert(driver)
        return driver

    async def list_drivers(self, status: str | None = None) -> list[DriverRecord]:
        conditions = [match("status", status)] if status else None
        return await self._gateway.fetch_all(DriverRecord, conditions=conditions)
