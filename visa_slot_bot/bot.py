"""
Telegram bot entrypoint built with aiogram 3.

Telegram-бот оператора:
- /start
- кнопки: Запустить мониторинг, Остановить, Статус
- FSM для состояния мониторинга
- мидлвара, которая пускает только админа по chat_id
- пересылка важных статусов (капча, успех, блокировка) админу
"""

from __future__ import annotations

import asyncio
import logging
import sys
from html import escape
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware, Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import (
    BufferedInputFile,
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
)

from .config import Settings, get_settings
from .events import EventBus
from .models import WatchEvent
from .scheduler import WatchService
from .utils import setup_logging


logger = logging.getLogger(__name__)


# Статусы, о которых админ узнаёт сразу
NOTIFY_STATES = {
    "WAITING_CAPTCHA": "🧩 Требуется ручной вход: решите капчу в браузере.",
    "DASHBOARD": "✅ Вход выполнен, открыт дашборд.",
    "SUCCESS": "🎉 Дата и время выбраны!",
    "COMPLETED": "✅ Процесс записи продвинулся, мониторинг завершён.",
    "IDLE": "💤 Браузер оставлен на дашборде.",
    "BLOCKED": "⛔ Вход не выполнен за 5 минут, сессия остановлена.",
    "STOPPED": "⏹ Мониторинг остановлен.",
    "FATAL": "❌ Критическая ошибка мониторинга.",
}


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[Message, Dict[str, Any]], Awaitable[Any]],
        event: Message,
        data: Dict[str, Any],
    ) -> Any:
        if getattr(event, "chat", None) and event.chat.id != self.admin_chat_id:
            await event.answer("Этот бот предназначен только для владельца.")
            return
        return await handler(event, data)


class MonitorStates(StatesGroup):
    idle = State()
    running = State()


def format_notification(event: WatchEvent) -> str | None:
    """Text for an admin notification, or None if the event is not worth one."""
    if event.kind != "status" or event.state not in NOTIFY_STATES:
        return None
    text = NOTIFY_STATES[event.state]
    if event.message:
        text += f"\n<code>{escape(event.message)}</code>"
    return text


def greeting_text(settings: Settings) -> str:
    return (
        "👋 Привет! Я бот для поиска свободной даты записи.\n\n"
        f"Пункт выдачи: <b>{escape(settings.booking.pickup_point)}</b>\n"
        f"Окно дат: <code>{escape(settings.booking.date_window().describe())}</code>\n\n"
        "После запуска откроется браузер: войдите и решите капчу вручную."
    )


def admin_sink(bot: Bot, admin_chat_id: int) -> Callable[[WatchEvent], Awaitable[None]]:
    async def _sink(event: WatchEvent) -> None:
        text = format_notification(event)
        if text is None:
            return
        screenshot = event.extra.get("screenshot")
        if screenshot:
            await _notify_admin_photo(bot, admin_chat_id, text, Path(screenshot))
        else:
            await _notify_admin_text(bot, admin_chat_id, text)

    return _sink


def main() -> None:
    """Entry point for running the bot."""
    settings = get_settings()
    setup_logging(settings.logging)
    if settings.bot is None:
        logger.error("BOT_TOKEN is not set; the Telegram bot cannot start")
        sys.exit(1)

    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()

    events = EventBus(settings.booking.session_id or "telegram")
    events.subscribe(admin_sink(bot, settings.bot.admin_chat_id))
    watcher = WatchService(settings, events)

    dp.message.middleware(AdminOnlyMiddleware(settings.bot.admin_chat_id))

    # region keyboards
    def main_keyboard() -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[
                [
                    InlineKeyboardButton(
                        text="▶️ Запустить мониторинг",
                        callback_data="start_monitoring",
                    )
                ],
                [
                    InlineKeyboardButton(
                        text="⏹ Остановить",
                        callback_data="stop_monitoring",
                    )
                ],
                [
                    InlineKeyboardButton(
                        text="ℹ️ Статус",
                        callback_data="status",
                    )
                ],
            ]
        )

    # endregion

    @dp.message(Command("start"))
    async def cmd_start(message: Message, state: FSMContext) -> None:
        await state.set_state(MonitorStates.idle)
        await message.answer(greeting_text(settings), reply_markup=main_keyboard())

    @dp.callback_query(F.data == "start_monitoring")
    async def on_start_monitoring(callback: CallbackQuery, state: FSMContext) -> None:
        await callback.answer()
        await watcher.start()
        await state.set_state(MonitorStates.running)
        await callback.message.edit_text(
            "Мониторинг запущен ✅", reply_markup=main_keyboard()
        )

    @dp.callback_query(F.data == "stop_monitoring")
    async def on_stop_monitoring(callback: CallbackQuery, state: FSMContext) -> None:
        await callback.answer()
        await callback.message.edit_text("Останавливаю мониторинг...")
        await watcher.stop()
        await state.set_state(MonitorStates.idle)
        await callback.message.edit_text(
            "Мониторинг остановлен ⏹️", reply_markup=main_keyboard()
        )

    @dp.callback_query(F.data == "status")
    async def on_status(callback: CallbackQuery, state: FSMContext) -> None:
        await callback.answer()
        st = watcher.state
        text = (
            f"📊 <b>Статус мониторинга</b>\n"
            f"Состояние: {'запущен' if st.is_running else 'остановлен'}\n"
            f"Попыток выполнено: {st.attempts_total}\n"
            f"Последний статус: {events.last_status or '-'}\n"
        )
        if st.last_attempt_at:
            text += f"Последняя попытка: {st.last_attempt_at:%Y-%m-%d %H:%M:%S} UTC\n"
        if st.result:
            text += f"Результат: {st.result.value}\n"
        if st.last_error:
            text += f"Последняя ошибка: <code>{escape(st.last_error)}</code>\n"

        await callback.message.edit_text(text, reply_markup=main_keyboard())

    logger.info("Starting polling")
    asyncio.run(_run_polling(dp, bot, events, watcher))


async def _run_polling(dp: Dispatcher, bot: Bot, events: EventBus, watcher: WatchService) -> None:
    pump = asyncio.create_task(events.pump(), name="event-pump")
    try:
        await dp.start_polling(bot)
    finally:
        if watcher.is_running:
            await watcher.stop()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        await events.flush()
        await bot.session.close()


async def _notify_admin_text(bot: Bot, admin_chat_id: int, text: str) -> None:
    try:
        await bot.send_message(chat_id=admin_chat_id, text=text)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to send text notification: %s", e)


async def _notify_admin_photo(
    bot: Bot,
    admin_chat_id: int,
    text: str,
    screenshot_path: Path,
) -> None:
    try:
        if screenshot_path.exists():
            await bot.send_photo(
                chat_id=admin_chat_id,
                photo=BufferedInputFile(screenshot_path.read_bytes(), filename=screenshot_path.name),
                caption=text,
            )
        else:
            await _notify_admin_text(bot, admin_chat_id, text)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to send captcha notification: %s", e)


if __name__ == "__main__":
    main()
