from __future__ import annotations

import logging
from typing import Any

from capadmin.core.errors import LedgerError, UpstreamError
from capadmin.core.fmt import ton_to_nano
from capadmin.core.http import ResilientHTTPClient
from capadmin.core.models import AnnouncedItem, FAMILIES, ItemFamily, LedgerRecord, LifecycleState, TransactionKind

logger = logging.getLogger(__name__)


def backend_cap_state(state: LifecycleState) -> str:
    if state == LifecycleState.REJECTED:
        return "ERROR"
    return "LISTED"


class LedgerClient:
    """Backend ledger writes. No dedup here: callers check record presence first."""

    def __init__(self, http: ResilientHTTPClient, base_url: str, api_key: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {"accept": "application/json", "content-type": "application/json", "x-api-key": self.api_key}

    async def _send(self, method: str, url: str, payload: dict[str, Any]) -> LedgerRecord:
        try:
            if method == "PATCH":
                result = await self.http.patch_json(url, payload, headers=self._headers(), retries=0)
            else:
                result = await self.http.post_json(url, payload, headers=self._headers(), retries=0)
        except UpstreamError as exc:
            raise LedgerError(str(exc), status_code=exc.status_code, body=exc.body) from exc
        if not isinstance(result, dict):
            raise LedgerError(f"{method} {url} returned a non-object JSON body")
        return result

    async def create_transaction(
        self,
        kind: TransactionKind,
        tx_hash: str,
        from_wallet: str,
        to_wallet: str,
        gift_id: int,
        currency: str,
        amount_nano: str,
        timestamp_ms: int,
        family: ItemFamily = ItemFamily.CAP,
    ) -> LedgerRecord:
        prefix = FAMILIES[family].ledger_prefix
        payload = {
            "txHash": tx_hash,
            "fromWalletAddress": from_wallet,
            "toWalletAddress": to_wallet,
            "giftId": gift_id,
            "currency": currency,
            "amount": amount_nano,
            "txType": kind.value,
            "timeStamp": timestamp_ms,
        }
        logger.info(
            "ledger_create_transaction",
            extra={"event": "ledger_create_transaction", "family": family.value, "key": tx_hash, "state": kind.value},
        )
        return await self._send("POST", f"{self.base_url}/{prefix}/transactions", payload)

    async def create_buy_transaction(self, item: AnnouncedItem) -> LedgerRecord:
        f = item.fields
        return await self.create_transaction(
            TransactionKind.BUY,
            tx_hash=f.tx_hash or "",
            from_wallet=f.from_wallet or "",
            to_wallet=f.to_wallet or "",
            gift_id=item.gift_numeric_id or 0,
            currency="TON",
            amount_nano=ton_to_nano(f.buy_price_ton),
            timestamp_ms=f.buy_time or 0,
            family=item.family,
        )

    async def create_sell_transaction(self, item: AnnouncedItem) -> LedgerRecord:
        f = item.fields
        return await self.create_transaction(
            TransactionKind.SELL,
            tx_hash=f.tx_hash or "",
            from_wallet=f.from_wallet or "",
            to_wallet=f.to_wallet or "",
            gift_id=item.gift_numeric_id or 0,
            currency="TON",
            amount_nano=ton_to_nano(f.sale_price_ton),
            timestamp_ms=f.sale_time or 0,
            family=item.family,
        )

    async def create_cap_record(
        self, item: AnnouncedItem, state: LifecycleState, buy_transaction_id: str | int
    ) -> LedgerRecord:
        f = item.fields
        payload = {
            "giftId": item.gift_numeric_id,
            "url": f.get_gems_url,
            "boughtFor": ton_to_nano(f.buy_price_ton),
            "listedFor": ton_to_nano(f.sale_price_ton),
            "capStrCapState": backend_cap_state(state),
            "buyDate": f.buy_time,
            "sellDate": None,
            "buyTransactionId": buy_transaction_id,
        }
        logger.info(
            "ledger_create_cap",
            extra={"event": "ledger_create_cap", "key": item.external_key, "state": payload["capStrCapState"]},
        )
        return await self._send("POST", f"{self.base_url}/capStr/caps", payload)

    async def patch_cap_sell_transaction(
        self, cap_id: str | int, sell_transaction_id: str | int, sell_date: int
    ) -> LedgerRecord:
        payload = {"sellTransactionId": sell_transaction_id, "sellDate": sell_date, "capStrCapState": "SOLD"}
        logger.info("ledger_patch_cap", extra={"event": "ledger_patch_cap", "key": str(cap_id)})
        return await self._send("PATCH", f"{self.base_url}/capStr/caps/{cap_id}", payload)

    async def mark_sold(
        self, gift_numeric_id: int, sold_for_nano: str, sell_date: int, sell_transaction_id: str | int
    ) -> LedgerRecord:
        payload = {
            "soldFor": sold_for_nano,
            "capStrCapState": "SOLD",
            "sellDate": sell_date,
            "sellTransactionId": sell_transaction_id,
        }
        logger.info("ledger_mark_sold", extra={"event": "ledger_mark_sold", "key": str(gift_numeric_id)})
        return await self._send("PATCH", f"{self.base_url}/capStr/capsSold/{gift_numeric_id}", payload)
