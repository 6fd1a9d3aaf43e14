from __future__ import annotations

from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from capadmin.core.models import EDITABLE_FIELDS, FAMILIES, TERMINAL_FOR_PHASE, AnnouncedItem


def empty_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[])


def item_actions(item: AnnouncedItem) -> InlineKeyboardMarkup:
    """Approve / Edit / Reject row; empty once the item is terminal for its phase."""
    if not item.profile.actionable or item.state in TERMINAL_FOR_PHASE:
        return empty_keyboard()
    key = item.external_key
    kb = InlineKeyboardBuilder()
    kb.button(text="Approve", callback_data=f"approve_{key}")
    kb.button(text="Edit", callback_data=f"edit_{key}")
    kb.button(text="Reject", callback_data=f"reject_{key}")
    kb.adjust(3)
    return kb.as_markup()


def field_selection_menu() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for index, (label, _) in enumerate(EDITABLE_FIELDS):
        kb.button(text=label, callback_data=f"select_field_{index}")
    kb.adjust(3)
    return kb.as_markup()


def family_menu(flow: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for family, profile in FAMILIES.items():
        kb.button(text=profile.label, callback_data=f"family:{flow}:{family.value}")
    kb.adjust(1)
    return kb.as_markup()


def green_text_site_menu(flow: str, sites: list[tuple[str, str]]) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for site, label in sites:
        kb.button(text=label, callback_data=f"site:{flow}:{site}")
    kb.adjust(1)
    return kb.as_markup()
