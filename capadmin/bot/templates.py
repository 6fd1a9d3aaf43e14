from __future__ import annotations

from aiogram.types import InlineKeyboardMarkup

from capadmin.bot.keyboards import item_actions
from capadmin.core.fmt import fmt_timestamp, nano_to_ton, safe_html
from capadmin.core.models import EDITABLE_FIELDS, AnnouncedItem, ItemFamily, LifecycleState

_KNOWN_ADDRESSES = {
    "EQDp00TOpFDpJ0IvBgIn6rOUiCQeNZQSAPzI7kNPT65pjyr2": "capstrategy.ton",
    "UQDp00TOpFDpJ0IvBgIn6rOUiCQeNZQSAPzI7kNPT65pj3cz": "capstrategy.ton",
}

_SALE_TYPES = {
    "auction": "Auction",
    "nftsalefixprice": "Sale",
    "fixpricesale": "Sale",
    "putupforsale": "Listed",
    "transfer": "Transferred",
}


def _na(value) -> str:
    return "N/A" if value is None else safe_html(value)


def sale_type_label(sale_type: str | None) -> str:
    if not sale_type:
        return "N/A"
    return _SALE_TYPES.get(sale_type.lower(), safe_html(sale_type))


def wallet_label(address: str | None) -> str:
    if not address:
        return "N/A"
    return _KNOWN_ADDRESSES.get(address, safe_html(address))


def _heading(item: AnnouncedItem) -> list[str]:
    noun = item.profile.noun
    state = item.state
    if state == LifecycleState.APPROVED:
        return [
            f"<b>✅ {noun} Published</b>",
            '<b>Live at:</b> <a href="https://capstrategy.fun">capstrategy.fun</a>',
        ]
    if state == LifecycleState.REJECTED:
        return [f"<b>⛔ Rejected {noun}</b>"]
    if state == LifecycleState.SOLD_PUBLISHED:
        return [f"<b>💰 {noun} Sold</b>"]
    if state == LifecycleState.SOLD_APPROVED:
        return [f"<b>✅ {noun} Sale Approved</b>"]
    if state == LifecycleState.SOLD_REJECTED:
        return [f"<b>⛔ {noun} Sale Rejected</b>"]
    if state == LifecycleState.APPROVED_SOLD:
        return [f"<b>💸 Published {noun} Sold</b>"]
    if item.is_edited:
        return [f"<b>✏️ Edited {noun}</b>"]
    icon = "🐸" if item.family == ItemFamily.GIFT else "🚨"
    return [f"<b>{icon} New {noun} Detected</b>"]


def alert_text(item: AnnouncedItem) -> str:
    f = item.fields
    lines = _heading(item)
    lines.append("")
    lines.append(f"<b>Getgems Address:</b> <code>{safe_html(item.external_key)}</code>")
    lines.append(f"<b>Name:</b> {_na(f.name)}")
    if item.family == ItemFamily.GIFT:
        lines.append(f"<b>Gift Number:</b> {_na(f.number)}")
    lines.extend(
        [
            "",
            f"<b>Record Type:</b> {sale_type_label(f.sale_type)}",
            f"<b>Buy Price:</b> {_na(f.buy_price_ton)} TON",
            f"<b>Sale Price:</b> {_na(f.sale_price_ton)} TON",
            "",
            f"<b>Buy Time (UTC):</b> {fmt_timestamp(f.buy_time)}",
        ]
    )
    if f.sale_time is not None:
        lines.append(f"<b>Sale Time (UTC):</b> {fmt_timestamp(f.sale_time)}")
    if f.get_gems_url:
        lines.append(f'<b>GetGems URL:</b> <a href="{safe_html(f.get_gems_url)}">View on GetGems</a>')
    else:
        lines.append("<b>GetGems URL:</b> N/A")
    if f.onchain_address:
        link = f'<a href="https://tonviewer.com/{safe_html(f.onchain_address)}">View on Tonviewer</a>'
    else:
        link = "Offchain Gift"
    lines.append(f"<b>Link to Gift:</b> {link}")
    lines.extend(
        [
            "",
            f"<b>Tx Hash:</b> <code>{_na(f.tx_hash)}</code>",
            f"<b>Seller Wallet:</b> <code>{wallet_label(f.from_wallet)}</code>",
            f"<b>Buyer Wallet:</b> <code>{wallet_label(f.to_wallet)}</code>",
        ]
    )
    return "\n".join(lines)


def render(item: AnnouncedItem) -> tuple[str, InlineKeyboardMarkup]:
    return alert_text(item), item_actions(item)


def field_prompt(index: int) -> str:
    label = EDITABLE_FIELDS[index][0]
    if EDITABLE_FIELDS[index][1] in ("buy_time", "sale_time"):
        return f"Send the new value for <b>{label}</b> as epoch milliseconds (e.g. <code>1700000000000</code>)."
    return f"Send the new value for <b>{label}</b>."


def edit_intro(item: AnnouncedItem) -> str:
    return f"Editing <code>{safe_html(item.external_key)}</code>. Pick the field to change:"


def tx_link(tx_hash: str) -> str:
    return f'<a href="https://tonviewer.com/transaction/{safe_html(tx_hash)}">{safe_html(tx_hash)}</a>'


def batch_summary(label: str, token: str, verb: str, entries: list[tuple[str, str, object]], total_nano: int) -> str:
    """entries: (tx_hash, amount_nano, ledger id or None)."""
    lines = [f"{label} {verb} transactions registered:"]
    for tx_hash, amount_nano, tx_id in entries:
        id_part = f" (ID: {tx_id})" if tx_id is not None else ""
        lines.append(f"- {tx_link(tx_hash)} • {nano_to_ton(amount_nano)} {token}{id_part}")
    verb_past = {"buy": "bought", "sell": "sold", "burn": "burned"}.get(verb, verb)
    lines.append(f"Total {token} {verb_past}: {nano_to_ton(total_nano)}")
    return "\n".join(lines)


def sell_buy_burn_summary(result) -> str:
    token = result.token
    lines = [
        f"{result.label} sell/buy/burn registration complete:",
        f"- TON sell transaction: {tx_link(result.sell_tx_hash)}",
        f"- {token} buy transaction: {tx_link(result.buy_tx_hash)}",
        f"- {token} burn transaction: {tx_link(result.burn_tx_hash)}",
        f"- Gift ID: {result.gift_id}",
        f"- {token} amount (nano): {result.token_amount_nano}",
    ]
    if result.cap_id is not None:
        lines.append(f"- CapStr cap updated: {result.cap_id}")
    if result.sell_transaction_id is not None:
        lines.append(f"- Sell transaction linked: {result.sell_transaction_id}")
    return "\n".join(lines)


def green_text_view(site_label: str, text: str | None, is_online: bool | None) -> str:
    status = "online" if is_online else "offline"
    body = safe_html(text) if text else "<i>empty</i>"
    return f"<b>Green text for {site_label}</b> ({status})\n\n{body}"


def sell_buy_burn_example() -> str:
    return (
        "<pre>{\n"
        '  "giftNumber": 3387,\n'
        '  "sellTxHash": "&lt;ton sell hash&gt;",\n'
        '  "tokenBuyTxHash": "&lt;token buy hash&gt;",\n'
        '  "tokenBurnTxHash": "&lt;token burn hash&gt;",\n'
        '  "tokenValue": "1250.5"\n'
        "}</pre>"
    )


def batch_example(kind: str) -> str:
    return (
        "<pre>{\n"
        '  "giftNumber": 3387,\n'
        f'  "{kind}TxHashes": [\n'
        '    "&lt;ton hash 1&gt;",\n'
        '    "&lt;ton hash 2&gt;"\n'
        "  ]\n"
        "}</pre>"
    )


def help_text() -> str:
    return (
        "<b>Admin commands</b>\n"
        "/subscribe - receive announcements in this chat\n"
        "/unsubscribe - stop announcements in this chat\n"
        "/pulldata - poll the backend now\n"
        "/approve &lt;number&gt; - approve an item by gift number\n"
        "/reject &lt;number&gt; - reject an item by gift number\n"
        "/registersellbuyburn - register a sell with its token buy and burn\n"
        "/registerbuys - register token buy transactions\n"
        "/registersells - register TON sell transactions\n"
        "/registerburns - register token burn transactions\n"
        "/getgreentext - show the site green text\n"
        "/updategreentext - change the site green text\n"
        "/removegreentext - take the site green text offline\n"
        "/cancel - abort the current flow"
    )
