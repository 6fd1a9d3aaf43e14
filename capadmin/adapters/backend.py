from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from capadmin.core.errors import UpstreamError
from capadmin.core.http import ResilientHTTPClient
from capadmin.core.models import FamilyProfile


class GreenTextSite(str, Enum):
    CAPSTRATEGY_FUN = "CAPSTRATEGY_FUN"
    PEPESTRATEGY_FUN = "PEPESTRATEGY_FUN"

    @property
    def label(self) -> str:
        return {"CAPSTRATEGY_FUN": "capstrategy.fun", "PEPESTRATEGY_FUN": "pepestrategy.fun"}[self.value]


@dataclass
class PollPayload:
    success: bool
    total: int | None = None
    has_new: bool = False
    new_items: list[dict] = field(default_factory=list)
    has_new_sales: bool = False
    new_sales: list[dict] = field(default_factory=list)
    polled_at: int | None = None

    @classmethod
    def parse(cls, payload, profile: FamilyProfile) -> "PollPayload":
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            return cls(success=False)
        data = payload["data"]
        new_items = [x for x in data.get(profile.new_items_key) or [] if isinstance(x, dict)]
        new_sales = [x for x in data.get("newSales") or [] if isinstance(x, dict)]
        return cls(
            success=True,
            total=data.get(profile.total_key),
            has_new=bool(data.get("hasNew")),
            new_items=new_items,
            has_new_sales=bool(data.get("hasNewSales", bool(new_sales))),
            new_sales=new_sales,
            polled_at=data.get("polledAt"),
        )


@dataclass
class GreenText:
    text: str | None
    is_online: bool | None


class BackendClient:
    def __init__(self, http: ResilientHTTPClient, base_url: str, api_key: str, poll_timeout: float = 15.0) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.poll_timeout = poll_timeout

    def _headers(self) -> dict[str, str]:
        return {"accept": "application/json", "x-api-key": self.api_key}

    async def poll(self, profile: FamilyProfile) -> PollPayload:
        raw = await self.http.get_json(
            f"{self.base_url}{profile.poll_path}",
            headers=self._headers(),
            timeout=self.poll_timeout,
            retries=0,
        )
        return PollPayload.parse(raw, profile)

    async def fetch_green_text(self, site: GreenTextSite) -> GreenText:
        payload = await self.http.get_json(f"{self.base_url}/greentext/fetch/{site.value}", headers=self._headers())
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            raise UpstreamError("Backend did not return green text data")
        data = payload["data"]
        return GreenText(text=data.get("Text"), is_online=data.get("IsOnline"))

    async def update_green_text(self, site: GreenTextSite, text: str) -> None:
        await self.http.patch_json(
            f"{self.base_url}/greentext/update/{site.value}",
            {"Text": text, "IsOnline": True},
            headers={**self._headers(), "content-type": "application/json"},
            retries=0,
        )

    async def disable_green_text(self, site: GreenTextSite) -> None:
        await self.http.patch_json(
            f"{self.base_url}/greentext/update/{site.value}",
            {"IsOnline": False},
            headers={**self._headers(), "content-type": "application/json"},
            retries=0,
        )
