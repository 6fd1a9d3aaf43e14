from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from capadmin.core.errors import ValidationError
from capadmin.core.models import ItemFamily


class FlowKind(str, Enum):
    SELL_BUY_BURN = "registersellbuyburn"
    BUYS = "registerbuys"
    SELLS = "registersells"
    BURNS = "registerburns"
    UPDATE_GREEN_TEXT = "updategreentext"
    REMOVE_GREEN_TEXT = "removegreentext"
    GET_GREEN_TEXT = "getgreentext"
    PULL_DATA = "pulldata"


@dataclass
class AwaitingField:
    chat_id: int
    family: ItemFamily
    key: str
    helper_message_ids: list[int] = field(default_factory=list)


@dataclass
class AwaitingValue:
    chat_id: int
    family: ItemFamily
    key: str
    field_index: int
    helper_message_ids: list[int] = field(default_factory=list)


@dataclass
class AwaitingTarget:
    chat_id: int
    flow: FlowKind
    helper_message_ids: list[int] = field(default_factory=list)


@dataclass
class AwaitingPayload:
    chat_id: int
    flow: FlowKind
    family: ItemFamily
    helper_message_ids: list[int] = field(default_factory=list)


@dataclass
class AwaitingGreenText:
    chat_id: int
    site: str
    helper_message_ids: list[int] = field(default_factory=list)


Stage = Union[AwaitingField, AwaitingValue, AwaitingTarget, AwaitingPayload, AwaitingGreenText]


class SessionStore:
    def __init__(self) -> None:
        self._stages: dict[int, Stage] = {}

    def get(self, user_id: int) -> Stage | None:
        return self._stages.get(user_id)

    def start(self, user_id: int, stage: Stage) -> None:
        if user_id in self._stages:
            raise ValidationError("Another flow is already in progress. Finish it or send /cancel first.")
        self._stages[user_id] = stage

    def advance(self, user_id: int, stage: Stage) -> None:
        self._stages[user_id] = stage

    def pop(self, user_id: int) -> Stage | None:
        return self._stages.pop(user_id, None)
