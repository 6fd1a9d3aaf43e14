from __future__ import annotations

import json
import logging

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import BotCommand, CallbackQuery, Message

from capadmin.bot.keyboards import family_menu, field_selection_menu, green_text_site_menu
from capadmin.bot.templates import (
    batch_example,
    batch_summary,
    edit_intro,
    field_prompt,
    green_text_view,
    help_text,
    sell_buy_burn_example,
    sell_buy_burn_summary,
)
from capadmin.adapters.backend import GreenTextSite
from capadmin.core.container import ServiceHub
from capadmin.core.errors import BotError, ValidationError
from capadmin.core.fmt import as_int, safe_html
from capadmin.core.models import EDITABLE_FIELDS, FAMILIES, ItemFamily, TransactionKind
from capadmin.services.sessions import (
    AwaitingField,
    AwaitingGreenText,
    AwaitingPayload,
    AwaitingTarget,
    AwaitingValue,
    FlowKind,
)

router = Router()
_hub: ServiceHub | None = None
logger = logging.getLogger(__name__)

_BATCH_KINDS = {
    FlowKind.BUYS: TransactionKind.BUY,
    FlowKind.SELLS: TransactionKind.SELL,
    FlowKind.BURNS: TransactionKind.BURN,
}
_FLOW_TITLES = {
    FlowKind.SELL_BUY_BURN: "sell/buy/burn transactions",
    FlowKind.BUYS: "buy transactions",
    FlowKind.SELLS: "sell transactions",
    FlowKind.BURNS: "burn transactions",
}

BOT_COMMANDS = [
    BotCommand(command="subscribe", description="Receive announcements in this chat"),
    BotCommand(command="unsubscribe", description="Stop announcements in this chat"),
    BotCommand(command="pulldata", description="Poll the backend now"),
    BotCommand(command="approve", description="Approve an item by gift number"),
    BotCommand(command="reject", description="Reject an item by gift number"),
    BotCommand(command="registersellbuyburn", description="Register sell, token buy and burn"),
    BotCommand(command="registerbuys", description="Register token buy transactions"),
    BotCommand(command="registersells", description="Register TON sell transactions"),
    BotCommand(command="registerburns", description="Register token burn transactions"),
    BotCommand(command="getgreentext", description="Show the site green text"),
    BotCommand(command="updategreentext", description="Change the site green text"),
    BotCommand(command="removegreentext", description="Take the site green text offline"),
    BotCommand(command="cancel", description="Abort the current flow"),
]


def init_handlers(hub: ServiceHub) -> None:
    global _hub
    _hub = hub


def _require_hub() -> ServiceHub:
    if _hub is None:
        raise RuntimeError("Handlers not initialized")
    return _hub


def _site_choices() -> list[tuple[str, str]]:
    return [(site.value, site.label) for site in GreenTextSite]


async def _authorized(message: Message, action: str) -> bool:
    hub = _require_hub()
    if hub.subscriptions.is_allowed(message.chat.id):
        return True
    logger.info(
        "unauthorized_command",
        extra={"event": "unauthorized_command", "chat_id": message.chat.id, "state": action},
    )
    await message.answer(f"Not authorized to {action}.")
    return False


async def _authorized_callback(callback: CallbackQuery) -> bool:
    hub = _require_hub()
    chat_id = callback.message.chat.id if callback.message else None
    if chat_id is not None and hub.subscriptions.is_allowed(chat_id):
        return True
    await callback.answer("Not authorized", show_alert=True)
    return False


async def _finish(user_id: int) -> None:
    """Close the user's flow and delete its helper messages."""
    hub = _require_hub()
    stage = hub.sessions.pop(user_id)
    if stage is not None and stage.helper_message_ids:
        await hub.gateway.delete_many(stage.chat_id, stage.helper_message_ids)


async def _start_flow(message: Message, stage) -> bool:
    hub = _require_hub()
    if not message.from_user:
        await message.answer("Unable to determine user initiating the request.")
        return False
    try:
        hub.sessions.start(message.from_user.id, stage)
    except ValidationError as exc:
        await message.answer(safe_html(exc))
        return False
    return True


@router.message(Command("start"))
@router.message(Command("help"))
async def help_cmd(message: Message) -> None:
    await message.answer(help_text())


@router.message(Command("subscribe"))
async def subscribe_cmd(message: Message) -> None:
    if not await _authorized(message, "subscribe to announcements"):
        return
    hub = _require_hub()
    if hub.subscriptions.subscribe(message.chat.id):
        await message.answer("This chat is now subscribed to announcements.")
    else:
        await message.answer("This chat is already subscribed.")


@router.message(Command("unsubscribe"))
async def unsubscribe_cmd(message: Message) -> None:
    if not await _authorized(message, "unsubscribe"):
        return
    hub = _require_hub()
    if hub.subscriptions.unsubscribe(message.chat.id):
        await message.answer("This chat will no longer receive announcements.")
    else:
        await message.answer("This chat was not subscribed.")


@router.message(Command("pulldata"))
async def pulldata_cmd(message: Message) -> None:
    if not await _authorized(message, "pull data"):
        return
    await message.answer("Select which strategy to poll:", reply_markup=family_menu(FlowKind.PULL_DATA.value))


async def _lifecycle_by_number(message: Message, command: CommandObject, approve: bool) -> None:
    hub = _require_hub()
    number = as_int((command.args or "").strip())
    verb = "approve" if approve else "reject"
    if number is None:
        await message.answer(f"Usage: /{verb} &lt;gift number&gt;")
        return
    try:
        item = hub.lifecycle.find_by_number(number)
        action = hub.lifecycle.approve if approve else hub.lifecycle.reject
        result = await action(item)
    except BotError as exc:
        logger.warning(
            f"{verb}_command_failed",
            extra={"event": f"{verb}_command_failed", "chat_id": message.chat.id, "error": str(exc)},
        )
        await message.answer(f"Failed to {verb} #{number}: {safe_html(exc)}")
        return
    if not result.changed:
        await message.answer(f"#{number} is already {result.item.state.value}.")
        return
    await message.answer(f"#{number}: {result.previous.value} → {result.item.state.value}")


@router.message(Command("approve"))
async def approve_cmd(message: Message, command: CommandObject) -> None:
    if not await _authorized(message, "approve items"):
        return
    await _lifecycle_by_number(message, command, approve=True)


@router.message(Command("reject"))
async def reject_cmd(message: Message, command: CommandObject) -> None:
    if not await _authorized(message, "reject items"):
        return
    await _lifecycle_by_number(message, command, approve=False)


async def _start_family_flow(message: Message, flow: FlowKind) -> None:
    if not await _authorized(message, f"register {_FLOW_TITLES[flow]}"):
        return
    stage = AwaitingTarget(chat_id=message.chat.id, flow=flow)
    if not await _start_flow(message, stage):
        return
    sent = await message.answer(
        f"Select which strategy you want to register {_FLOW_TITLES[flow]} for:",
        reply_markup=family_menu(flow.value),
    )
    stage.helper_message_ids.append(sent.message_id)


@router.message(Command("registersellbuyburn"))
async def register_sell_buy_burn_cmd(message: Message) -> None:
    await _start_family_flow(message, FlowKind.SELL_BUY_BURN)


@router.message(Command("registerbuys"))
async def register_buys_cmd(message: Message) -> None:
    await _start_family_flow(message, FlowKind.BUYS)


@router.message(Command("registersells"))
async def register_sells_cmd(message: Message) -> None:
    await _start_family_flow(message, FlowKind.SELLS)


@router.message(Command("registerburns"))
async def register_burns_cmd(message: Message) -> None:
    await _start_family_flow(message, FlowKind.BURNS)


@router.message(Command("updategreentext"))
async def update_green_text_cmd(message: Message) -> None:
    if not await _authorized(message, "update green text"):
        return
    stage = AwaitingTarget(chat_id=message.chat.id, flow=FlowKind.UPDATE_GREEN_TEXT)
    if not await _start_flow(message, stage):
        return
    sent = await message.answer(
        "Select which site's green text to update:",
        reply_markup=green_text_site_menu(FlowKind.UPDATE_GREEN_TEXT.value, _site_choices()),
    )
    stage.helper_message_ids.append(sent.message_id)


@router.message(Command("removegreentext"))
async def remove_green_text_cmd(message: Message) -> None:
    if not await _authorized(message, "remove green text"):
        return
    await message.answer(
        "Select which site's green text to remove:",
        reply_markup=green_text_site_menu(FlowKind.REMOVE_GREEN_TEXT.value, _site_choices()),
    )


@router.message(Command("getgreentext"))
async def get_green_text_cmd(message: Message) -> None:
    if not await _authorized(message, "get green text"):
        return
    await message.answer(
        "Select which site's green text to show:",
        reply_markup=green_text_site_menu(FlowKind.GET_GREEN_TEXT.value, _site_choices()),
    )


@router.message(Command("cancel"))
async def cancel_cmd(message: Message) -> None:
    hub = _require_hub()
    if not message.from_user or hub.sessions.get(message.from_user.id) is None:
        await message.answer("Nothing to cancel.")
        return
    await _finish(message.from_user.id)
    await message.answer("Cancelled.")


@router.callback_query(F.data.startswith("approve_"))
async def approve_callback(callback: CallbackQuery) -> None:
    if not await _authorized_callback(callback):
        return
    hub = _require_hub()
    key = (callback.data or "").removeprefix("approve_")
    try:
        result = await hub.lifecycle.approve(hub.lifecycle.find(key))
    except BotError as exc:
        logger.warning(
            "approve_failed",
            extra={"event": "approve_failed", "key": key, "error": str(exc)},
        )
        await callback.answer("Approve failed")
        await callback.message.answer(f"Failed to approve <code>{safe_html(key)}</code>: {safe_html(exc)}")
        return
    await callback.answer("Approved" if result.changed else f"Already {result.item.state.value}")


@router.callback_query(F.data.startswith("reject_"))
async def reject_callback(callback: CallbackQuery) -> None:
    if not await _authorized_callback(callback):
        return
    hub = _require_hub()
    key = (callback.data or "").removeprefix("reject_")
    try:
        result = await hub.lifecycle.reject(hub.lifecycle.find(key))
    except BotError as exc:
        logger.warning("reject_failed", extra={"event": "reject_failed", "key": key, "error": str(exc)})
        await callback.answer(f"Reject failed: {exc}"[:200], show_alert=True)
        return
    await callback.answer("Rejected" if result.changed else f"Already {result.item.state.value}")


@router.callback_query(F.data.startswith("edit_"))
async def edit_callback(callback: CallbackQuery) -> None:
    if not await _authorized_callback(callback):
        return
    hub = _require_hub()
    key = (callback.data or "").removeprefix("edit_")
    user_id = callback.from_user.id
    try:
        item = hub.lifecycle.find(key)
        stage = AwaitingField(chat_id=callback.message.chat.id, family=item.family, key=key)
        hub.sessions.start(user_id, stage)
    except BotError as exc:
        await callback.answer(str(exc)[:200], show_alert=True)
        return
    sent = await callback.message.answer(edit_intro(item), reply_markup=field_selection_menu())
    stage.helper_message_ids.append(sent.message_id)
    await callback.answer()


@router.callback_query(F.data.startswith("select_field_"))
async def select_field_callback(callback: CallbackQuery) -> None:
    hub = _require_hub()
    user_id = callback.from_user.id
    stage = hub.sessions.get(user_id)
    index = as_int((callback.data or "").removeprefix("select_field_"))
    if not isinstance(stage, AwaitingField):
        await callback.answer("Session expired. Press Edit again.", show_alert=True)
        return
    if index is None or not 0 <= index < len(EDITABLE_FIELDS):
        await callback.answer("Unknown field", show_alert=True)
        return
    prompt = await callback.message.answer(field_prompt(index))
    hub.sessions.advance(
        user_id,
        AwaitingValue(
            chat_id=stage.chat_id,
            family=stage.family,
            key=stage.key,
            field_index=index,
            helper_message_ids=[*stage.helper_message_ids, prompt.message_id],
        ),
    )
    await callback.answer(f"Selected {EDITABLE_FIELDS[index][0]}")


@router.callback_query(F.data.startswith("family:"))
async def family_callback(callback: CallbackQuery) -> None:
    if not await _authorized_callback(callback):
        return
    hub = _require_hub()
    _, flow_raw, family_raw = ((callback.data or "").split(":", 2) + ["", ""])[:3]
    try:
        flow = FlowKind(flow_raw)
        family = ItemFamily(family_raw)
    except ValueError:
        await callback.answer("Unknown selection", show_alert=True)
        return
    profile = FAMILIES[family]

    if flow == FlowKind.PULL_DATA:
        await callback.answer(f"Polling {profile.label}...")
        report = await hub.poller.poll(family)
        if report.ok:
            await callback.message.answer(
                f"{profile.label} poll complete: {len(report.new_items)} new, {len(report.sales)} sales."
            )
        else:
            await callback.message.answer(f"{profile.label} poll returned nothing: {safe_html(report.error or '')}")
        return

    user_id = callback.from_user.id
    stage = hub.sessions.get(user_id)
    if not isinstance(stage, AwaitingTarget) or stage.flow != flow:
        await callback.answer(f"Session expired. Use /{flow.value} again.", show_alert=True)
        return
    helpers = list(stage.helper_message_ids)
    if flow == FlowKind.SELL_BUY_BURN:
        instructions = (
            f"Registering sell/buy/burn for {profile.label}.\n"
            "Reply with JSON containing giftNumber, sellTxHash, tokenBuyTxHash, tokenBurnTxHash and "
            f"tokenValue ({profile.token} amount)."
        )
        example = sell_buy_burn_example()
    else:
        kind = _BATCH_KINDS[flow]
        instructions = (
            f"Registering {_FLOW_TITLES[flow]} for {profile.label}.\n"
            f"Reply with JSON containing giftNumber and {kind.value.lower()}TxHashes.\n"
            "Amounts are fetched from the blockchain."
        )
        example = batch_example(kind.value.lower())
    for text in (instructions, example):
        sent = await callback.message.answer(text)
        helpers.append(sent.message_id)
    hub.sessions.advance(
        user_id, AwaitingPayload(chat_id=stage.chat_id, flow=flow, family=family, helper_message_ids=helpers)
    )
    await callback.answer(f"Selected {profile.label}")


@router.callback_query(F.data.startswith("site:"))
async def site_callback(callback: CallbackQuery) -> None:
    if not await _authorized_callback(callback):
        return
    hub = _require_hub()
    _, flow_raw, site_raw = ((callback.data or "").split(":", 2) + ["", ""])[:3]
    try:
        flow = FlowKind(flow_raw)
        site = hub.green_text.site(site_raw)
    except (ValueError, ValidationError):
        await callback.answer("Unknown selection", show_alert=True)
        return

    if flow == FlowKind.UPDATE_GREEN_TEXT:
        user_id = callback.from_user.id
        stage = hub.sessions.get(user_id)
        if not isinstance(stage, AwaitingTarget) or stage.flow != flow:
            await callback.answer("Session expired. Use /updategreentext again.", show_alert=True)
            return
        prompt = await callback.message.answer(f"Send the new green text for {site.label}.")
        hub.sessions.advance(
            user_id,
            AwaitingGreenText(
                chat_id=stage.chat_id, site=site.value, helper_message_ids=[*stage.helper_message_ids, prompt.message_id]
            ),
        )
        await callback.answer(f"Selected {site.label}")
        return

    await callback.answer()
    try:
        if flow == FlowKind.REMOVE_GREEN_TEXT:
            await hub.green_text.disable(site)
            await callback.message.answer(f"Green text for {site.label} removed.")
        else:
            current = await hub.green_text.get(site)
            await callback.message.answer(green_text_view(site.label, current.text, current.is_online))
    except BotError as exc:
        logger.error(
            "green_text_failed",
            extra={"event": "green_text_failed", "key": site.value, "error": str(exc)},
        )
        await callback.message.answer(f"Green text request failed: {safe_html(exc)}")


async def _handle_value(message: Message, stage: AwaitingValue) -> None:
    hub = _require_hub()
    user_id = message.from_user.id
    try:
        item = hub.lifecycle.find(stage.key)
        results = await hub.lifecycle.apply_edit(item, stage.field_index, message.text or "")
    except ValidationError as exc:
        # prompt stays open
        await message.answer(f"{safe_html(exc)} Try again or send /cancel.")
        return
    except BotError as exc:
        await _finish(user_id)
        await message.answer(f"Edit failed: {safe_html(exc)}")
        return
    await _finish(user_id)
    failed = [r.chat_id for r in results if not r.ok]
    suffix = f" (delivery failed in {len(failed)} chat(s))" if failed else ""
    await message.answer(f"Updated {EDITABLE_FIELDS[stage.field_index][0]}.{suffix}")


async def _handle_payload(message: Message, stage: AwaitingPayload) -> None:
    hub = _require_hub()
    user_id = message.from_user.id
    try:
        payload = json.loads((message.text or "").strip())
    except ValueError:
        await _finish(user_id)
        await message.answer("Invalid JSON. Please check the payload and try again.")
        return
    if not isinstance(payload, dict):
        await _finish(user_id)
        await message.answer("The payload must be a JSON object.")
        return
    try:
        if stage.flow == FlowKind.SELL_BUY_BURN:
            result = await hub.registration.register_sell_buy_burn(stage.family, payload)
            reply = sell_buy_burn_summary(result)
        else:
            batch = await hub.registration.register_batch(stage.family, _BATCH_KINDS[stage.flow], payload)
            reply = batch_summary(
                batch.label,
                batch.token,
                batch.kind.value.lower(),
                [(e.tx_hash, e.amount_nano, e.transaction_id) for e in batch.entries],
                batch.total_nano,
            )
    except BotError as exc:
        logger.exception(
            "registration_failed",
            extra={"event": "registration_failed", "user_id": user_id, "family": stage.family.value, "error": str(exc)},
        )
        await _finish(user_id)
        await message.answer(f"Failed to register {_FLOW_TITLES[stage.flow]}: {safe_html(exc)}")
        return
    await _finish(user_id)
    await message.answer(reply)


async def _handle_green_text(message: Message, stage: AwaitingGreenText) -> None:
    hub = _require_hub()
    user_id = message.from_user.id
    site = hub.green_text.site(stage.site)
    try:
        current = await hub.green_text.update(site, message.text or "")
    except ValidationError as exc:
        await message.answer(f"{safe_html(exc)} Please send a value.")
        return
    except BotError as exc:
        logger.error("green_text_failed", extra={"event": "green_text_failed", "key": site.value, "error": str(exc)})
        await _finish(user_id)
        await message.answer(f"Failed to update green text: {safe_html(exc)}")
        return
    await _finish(user_id)
    await message.answer(green_text_view(site.label, current.text, current.is_online))


@router.message(F.text & ~F.text.startswith("/"))
async def flow_text_handler(message: Message) -> None:
    hub = _require_hub()
    if not message.from_user:
        return
    stage = hub.sessions.get(message.from_user.id)
    if stage is None:
        return
    if isinstance(stage, AwaitingValue):
        await _handle_value(message, stage)
    elif isinstance(stage, AwaitingPayload):
        await _handle_payload(message, stage)
    elif isinstance(stage, AwaitingGreenText):
        await _handle_green_text(message, stage)
    elif isinstance(stage, AwaitingField):
        await message.answer("Pick a field using the buttons above, or send /cancel.")
    elif isinstance(stage, AwaitingTarget):
        await message.answer("Please choose using the buttons provided, or send /cancel.")
