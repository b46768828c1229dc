# -*- coding: utf-8 -*-
"""
Telegram-бот «Финансовый коуч»: продажа услуг «Финансовый детокс» и
«Финансовое моделирование» с оплатой через ЮKassa, свободный диалог — через ИИ-агента.
Перед запуском: заполните .env (TELEGRAM_BOT_TOKEN, YOOKASSA_SHOP_ID, YOOKASSA_SECRET_KEY;
для ИИ-ответов — DEEPSEEK_API_KEY).

Режимы: polling (python bot.py) или webhook (server.py -> process_webhook_update).
"""

import json
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions, Update, WebAppInfo
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from agent import FinanceAgent
from order_flow import (
    DEFAULT_DETOX_FORM_URL,
    Button,
    InboundUpdate,
    OrderFlow,
    build_services,
)
from storage import OrdersDB
from yookassa_integration import YooKassaClient

load_dotenv()

# ============== НАСТРОЙКИ ==============


def _int_from_env(name: str, default: int) -> int:
    try:
        return int(float(os.getenv(name, str(default)).strip().replace(",", ".")))
    except (TypeError, ValueError, AttributeError):
        return default


# Цены только из .env, в целых рублях.
PRICE_DETOX_RUB = _int_from_env("PRICE_DETOX_RUB", 450)
PRICE_MODELING_RUB = _int_from_env("PRICE_MODELING_RUB", 350)

DETOX_FORM_URL = os.getenv("DETOX_FORM_URL") or DEFAULT_DETOX_FORM_URL
# Публичный адрес сервера с мини-приложением (server.py). Пусто = кнопка мини-приложения не показывается.
HOST_URL = (os.getenv("HOST_URL") or "").rstrip("/")
SUPPORT_CONTACT = os.getenv("SUPPORT_CONTACT", "")

# Админы: их telegram id получают флаг админа при первом обращении.
ADMIN_TELEGRAM_IDS = frozenset(x.strip() for x in os.getenv("ADMIN_TELEGRAM_IDS", "").split(",") if x.strip())
# Чат для критических инцидентов с оплатой. Пусто = только лог.
ADMIN_CHAT_ID = _int_from_env("ADMIN_CHAT_ID", 0) or None

# Логирование в файл. True = писать в bot.log.
LOG_TO_FILE = (os.getenv("LOG_TO_FILE", "0") or "0") in ("1", "true", "True", "yes")

# Таймауты HTTP-запросов к Telegram, секунды.
TELEGRAM_CONNECT_TIMEOUT = 10
TELEGRAM_READ_TIMEOUT = 20

TELEGRAM_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")

# ============== КОД БОТА ==============


def _keyboard(buttons: Optional[list[list[Button]]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    rows = []
    for row in buttons:
        out = []
        for b in row:
            if b.web_app_url:
                out.append(InlineKeyboardButton(b.text, web_app=WebAppInfo(url=b.web_app_url)))
            elif b.url:
                out.append(InlineKeyboardButton(b.text, url=b.url))
            else:
                out.append(InlineKeyboardButton(b.text, callback_data=b.callback_data))
        rows.append(out)
    return InlineKeyboardMarkup(rows)


class TelegramMessenger:
    """Отправка сообщений через Bot API. parse_mode не используем, чтобы ссылки и «_» в id платежей не ломали разметку."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, chat_id: int, text: str, buttons: Optional[list[list[Button]]] = None) -> Optional[int]:
        if len(text) > 4096:
            text = text[:4093] + "..."
        msg = await self.bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_markup=_keyboard(buttons),
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )
        return msg.message_id


def inbound_from_update(update: Update) -> Optional[InboundUpdate]:
    """Telegram Update -> InboundUpdate для сценариев. None — обновление нам не интересно."""
    user = update.effective_user
    chat = update.effective_chat
    if not user or not chat:
        return None
    common = dict(
        chat_id=chat.id,
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    if update.callback_query:
        return InboundUpdate(message_kind="button", token=(update.callback_query.data or "").strip(), **common)
    if update.message and update.message.text:
        return InboundUpdate(message_kind="text", text=update.message.text.strip(), **common)
    return None


def build_flow(bot: Bot) -> OrderFlow:
    """Собирает сценарии с реальными клиентами: SQLite, ЮKassa, Telegram, DeepSeek."""
    return OrderFlow(
        store=OrdersDB.from_env(),
        gateway=YooKassaClient.from_env(),
        messenger=TelegramMessenger(bot),
        agent=FinanceAgent.from_env(),
        services=build_services(PRICE_DETOX_RUB, PRICE_MODELING_RUB),
        detox_form_url=DETOX_FORM_URL,
        host_url=HOST_URL,
        admin_chat_id=ADMIN_CHAT_ID,
        admin_telegram_ids=ADMIN_TELEGRAM_IDS,
        support_contact=SUPPORT_CONTACT,
    )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Текст и команды (/start, /admin, …) — всё через маршрутизатор действий."""
    inbound = inbound_from_update(update)
    if inbound is None:
        return
    flow: OrderFlow = context.application.bot_data["flow"]
    try:
        await flow.handle_update(inbound)
    except Exception as e:
        logging.exception("Update handling error: %s", e)


async def handle_button(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Нажатие inline-кнопки: callback_data — токен действия (order_*, payment_*, send_report_*)."""
    query = update.callback_query
    if not query:
        return
    try:
        await query.answer()
    except Exception as e:
        logging.warning("callback_query.answer failed: %s", e)
    inbound = inbound_from_update(update)
    if inbound is None or not inbound.token:
        return
    flow: OrderFlow = context.application.bot_data["flow"]
    try:
        await flow.handle_update(inbound)
    except Exception as e:
        logging.exception("Button handling error: %s", e)


def build_application() -> Application:
    """Собирает и возвращает приложение бота (для polling или webhook)."""
    if not TELEGRAM_TOKEN:
        raise ValueError("В .env не указан TELEGRAM_BOT_TOKEN.")
    app = (
        Application.builder()
        .token(TELEGRAM_TOKEN)
        .connect_timeout(TELEGRAM_CONNECT_TIMEOUT)
        .read_timeout(TELEGRAM_READ_TIMEOUT)
        .write_timeout(TELEGRAM_READ_TIMEOUT)
        .pool_timeout(TELEGRAM_CONNECT_TIMEOUT)
        .build()
    )
    app.bot_data["flow"] = build_flow(app.bot)
    app.add_handler(CallbackQueryHandler(handle_button))
    app.add_handler(MessageHandler(filters.TEXT, handle_message))
    return app


async def process_webhook_update(update_body: str, app: Optional[Application] = None) -> None:
    """
    Обрабатывает один update от Telegram (режим webhook).
    Сюда передаётся тело HTTP-запроса (JSON). Если app уже инициализирован
    (долгоживущий сервер), используется он — вместе с его блокировками по пользователям.
    """
    if app is not None:
        await app.process_update(Update.de_json(json.loads(update_body), app.bot))
        return
    app = build_application()
    update_data = json.loads(update_body)
    update = Update.de_json(update_data, app.bot)
    await app.initialize()
    try:
        await app.process_update(update)
    finally:
        await app.shutdown()


def setup_logging() -> None:
    if LOG_TO_FILE:
        logging.basicConfig(
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            level=logging.INFO,
            filename="bot.log",
            encoding="utf-8",
        )
    else:
        logging.basicConfig(
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            level=logging.INFO,
        )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    setup_logging()
    app = build_application()
    print("Бот запущен. Остановка: Ctrl+C")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
