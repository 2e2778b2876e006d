"""
Suppression list — addresses that must never be contacted.

Email addresses are compared case-insensitively; phone numbers are compared
with whitespace and separators removed. A suppression without a tenant
applies to every tenant.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from database.store_base import BaseCampaignStore
from models.schemas import Suppression

logger = structlog.get_logger()


def normalize_address(channel: str, address: str) -> str:
    channel = getattr(channel, "value", channel)
    address = (address or "").strip()
    if channel == "email":
        return address.lower()
    if channel == "sms":
        return re.sub(r"[\s\-().]", "", address)
    return address


class SuppressionService:
    """Answers "may we contact this address?" for the dispatcher."""

    def __init__(self, store: BaseCampaignStore):
        self.store = store

    async def is_unsubscribed(self, tenant_id: str, channel: str, address: str) -> bool:
        channel = getattr(channel, "value", channel)
        return await self.store.is_suppressed(tenant_id, channel, normalize_address(channel, address))

    async def suppress(self, tenant_id: Optional[str], channel: str, address: str,
                       reason: str = "unsubscribed") -> Suppression:
        channel = getattr(channel, "value", channel)
        normalized = normalize_address(channel, address)
        if await self.store.is_suppressed(tenant_id or "", channel, normalized):
            logger.info("suppression_already_recorded", tenant_id=tenant_id, channel=channel)
            return Suppression(tenant_id=tenant_id, channel=channel, address=normalized, reason=reason)

        suppression = await self.store.add_suppression(
            Suppression(tenant_id=tenant_id, channel=channel, address=normalized, reason=reason)
        )
        logger.info("address_suppressed",
                    tenant_id=tenant_id,
                    channel=channel,
                    reason=reason)
        return suppression
