from __future__ import annotations

import asyncio
import io
import logging
from datetime import datetime

import qrcode
from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import BufferedInputFile, CallbackQuery, Message

from pubwifi.bot.keyboards import kb_back, kb_confirm_disconnect, kb_vpn
from pubwifi.bot.ui import fmt_bytes, history_text, status_text
from pubwifi.core.config import Settings
from pubwifi.services.vpn.errors import VpnError
from pubwifi.services.vpn.service import SessionManager

log = logging.getLogger(__name__)

router = Router()

# strong refs; the loop only keeps weak ones to running tasks
_background_tasks: set[asyncio.Task] = set()

MENU_TEXT = (
    "🌍 VPN for public WiFi\n\n"
    "Connect to get a WireGuard config and QR code.\n"
    "Import it into the WireGuard app and switch it on."
)


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _qr_png(conf_text: str) -> bytes:
    img = qrcode.make(conf_text)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@router.message(CommandStart())
@router.message(Command("vpn"))
async def cmd_vpn(message: Message) -> None:
    await message.answer(MENU_TEXT, reply_markup=kb_vpn())


@router.callback_query(lambda c: c.data == "vpn:menu")
async def on_vpn_menu(cb: CallbackQuery) -> None:
    await cb.message.edit_text(MENU_TEXT, reply_markup=kb_vpn())
    await cb.answer()


@router.callback_query(lambda c: c.data == "vpn:connect")
async def on_vpn_connect(cb: CallbackQuery, vpn: SessionManager, settings: Settings) -> None:
    tg_id = cb.from_user.id
    try:
        result = await vpn.connect(tg_id)
    except VpnError as e:
        log.warning("vpn_connect_rejected user_id=%s kind=%s", tg_id, e.kind.value)
        await cb.answer(str(e), show_alert=True)
        return

    conf_file = BufferedInputFile(
        result.config.encode(),
        filename=f"pubwifi_{tg_id}_{datetime.now().strftime('%d-%m-%Y')}.conf",
    )
    qr_file = BufferedInputFile(_qr_png(result.config), filename="wg.png")

    msg_conf = await cb.message.answer_document(
        document=conf_file,
        caption=f"WireGuard config. It will be deleted in {settings.auto_delete_seconds} sec.",
    )
    msg_qr = await cb.message.answer_photo(photo=qr_file, caption="QR for WireGuard")
    await cb.answer("Connected" if result.created else "Already connected")

    async def _cleanup() -> None:
        await asyncio.sleep(settings.auto_delete_seconds)
        for m in (msg_conf, msg_qr):
            try:
                await m.delete()
            except Exception:
                log.debug("vpn_config_message_delete_failed message_id=%s", m.message_id)

    _spawn(_cleanup())


@router.callback_query(lambda c: c.data == "vpn:status")
async def on_vpn_status(cb: CallbackQuery, vpn: SessionManager) -> None:
    try:
        view = await vpn.status(cb.from_user.id)
    except VpnError as e:
        await cb.answer(str(e), show_alert=True)
        return
    await cb.message.edit_text(status_text(view), reply_markup=kb_back())
    await cb.answer()


@router.callback_query(lambda c: c.data == "vpn:history")
async def on_vpn_history(cb: CallbackQuery, vpn: SessionManager) -> None:
    try:
        rows = await vpn.history(cb.from_user.id)
    except VpnError as e:
        await cb.answer(str(e), show_alert=True)
        return
    await cb.message.edit_text(history_text(rows), reply_markup=kb_back())
    await cb.answer()


@router.callback_query(lambda c: c.data == "vpn:disconnect:confirm")
async def on_vpn_disconnect_confirm(cb: CallbackQuery) -> None:
    await cb.message.edit_text(
        "⛔️ Disconnect VPN?\nYour current config will stop working.",
        reply_markup=kb_confirm_disconnect(),
    )
    await cb.answer()


@router.callback_query(lambda c: c.data == "vpn:disconnect")
async def on_vpn_disconnect(cb: CallbackQuery, vpn: SessionManager) -> None:
    tg_id = cb.from_user.id
    try:
        result = await vpn.disconnect(tg_id)
    except VpnError as e:
        log.warning("vpn_disconnect_rejected user_id=%s kind=%s", tg_id, e.kind.value)
        await cb.answer(str(e), show_alert=True)
        return

    if not result.disconnected:
        text = "VPN was not connected."
    else:
        text = (
            "VPN disconnected.\n\n"
            f"Sent: {fmt_bytes(result.bytes_sent)}\n"
            f"Received: {fmt_bytes(result.bytes_received)}"
        )
    await cb.message.edit_text(text, reply_markup=kb_back())
    await cb.answer()
