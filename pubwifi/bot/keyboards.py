from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder


def kb_vpn() -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="📦 Connect (config + QR)", callback_data="vpn:connect")
    b.button(text="📊 Status", callback_data="vpn:status")
    b.button(text="🕘 History", callback_data="vpn:history")
    b.button(text="⛔️ Disconnect", callback_data="vpn:disconnect:confirm")
    b.adjust(1)
    return b.as_markup()


def kb_confirm_disconnect() -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="✅ Yes, disconnect", callback_data="vpn:disconnect")
    b.button(text="❌ Cancel", callback_data="vpn:menu")
    b.adjust(1)
    return b.as_markup()


def kb_back() -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="⬅️ Back", callback_data="vpn:menu")
    b.adjust(1)
    return b.as_markup()
