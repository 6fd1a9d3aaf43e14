from __future__ import annotations

from dataclasses import dataclass

from aiogram import Bot

from capadmin.adapters.backend import BackendClient
from capadmin.adapters.ledger import LedgerClient
from capadmin.adapters.ton import TonOracle
from capadmin.core.config import Settings
from capadmin.core.http import ResilientHTTPClient
from capadmin.core.models import ItemFamily
from capadmin.services.delivery import TelegramGateway
from capadmin.services.green_text import GreenTextService
from capadmin.services.item_store import ItemStore, build_stores
from capadmin.services.lifecycle import LifecycleService
from capadmin.services.poller import PollService
from capadmin.services.registration import RegistrationService
from capadmin.services.sessions import SessionStore
from capadmin.services.subscriptions import SubscriptionService


@dataclass
class ServiceHub:
    bot: Bot
    http: ResilientHTTPClient
    gateway: TelegramGateway
    stores: dict[ItemFamily, ItemStore]
    subscriptions: SubscriptionService
    sessions: SessionStore
    backend: BackendClient
    ledger: LedgerClient
    oracle: TonOracle
    lifecycle: LifecycleService
    poller: PollService
    registration: RegistrationService
    green_text: GreenTextService


def build_hub(settings: Settings, bot: Bot, http: ResilientHTTPClient | None = None) -> ServiceHub:
    http = http or ResilientHTTPClient(timeout=settings.http_timeout_sec, retries=settings.http_retries)
    gateway = TelegramGateway(bot)
    stores = build_stores(settings.data_path())
    subscriptions = SubscriptionService(settings.chat_ids_list())
    backend = BackendClient(
        http, settings.backend_api_url, settings.backend_api_key, poll_timeout=settings.poll_timeout_sec
    )
    ledger = LedgerClient(http, settings.backend_api_url, settings.backend_api_key)
    oracle = TonOracle(http, settings.ton_api_base_url, settings.ton_api_key)
    lifecycle = LifecycleService(stores, ledger, gateway, subscriptions)
    return ServiceHub(
        bot=bot,
        http=http,
        gateway=gateway,
        stores=stores,
        subscriptions=subscriptions,
        sessions=SessionStore(),
        backend=backend,
        ledger=ledger,
        oracle=oracle,
        lifecycle=lifecycle,
        poller=PollService(backend, stores, lifecycle),
        registration=RegistrationService(stores, ledger, oracle),
        green_text=GreenTextService(backend),
    )
