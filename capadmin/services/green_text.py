from __future__ import annotations

import logging

from capadmin.adapters.backend import BackendClient, GreenText, GreenTextSite
from capadmin.core.errors import ValidationError

logger = logging.getLogger(__name__)


class GreenTextService:
    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend

    @staticmethod
    def site(value: str) -> GreenTextSite:
        try:
            return GreenTextSite(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown site {value}.") from exc

    async def get(self, site: GreenTextSite) -> GreenText:
        return await self.backend.fetch_green_text(site)

    async def update(self, site: GreenTextSite, text: str) -> GreenText:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Green text cannot be empty.")
        await self.backend.update_green_text(site, text)
        logger.info("green_text_updated", extra={"event": "green_text_updated", "key": site.value})
        return await self.backend.fetch_green_text(site)

    async def disable(self, site: GreenTextSite) -> None:
        await self.backend.disable_green_text(site)
        logger.info("green_text_disabled", extra={"event": "green_text_disabled", "key": site.value})
