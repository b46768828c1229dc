"""
Сценарии заказа и оплаты: создание заказа, подтверждение оплаты, панель админа,
отправка отчёта и передача всего остального ИИ-агенту.

Шлюз ЮKassa и SQLite не связаны общей транзакцией, поэтому подтверждение оплаты
устроено как сага: сначала статус заказа, затем статус платежа (последняя запись,
она же защита от повторной обработки). Если запись платежа не удалась, статус
заказа откатывается. Если не удался и откат — это инцидент для оператора.

Каждый вызов отправляет пользователю ровно одно сообщение и возвращает Outcome;
исключения шлюза и хранилища наружу не выходят.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import sqlite3
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from actions import (
    SERVICE_DETOX,
    SERVICE_MODELING,
    Action,
    ConfirmPayment,
    CreateOrder,
    Fallback,
    SendReport,
    ShowAdminPanel,
    order_token,
    payment_token,
    route_action,
    send_report_token,
)
from storage import (
    ORDER_COMPLETED,
    ORDER_CREATED,
    ORDER_FORM_SENT,
    ORDER_PAYMENT_CONFIRMED,
    ORDER_PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PENDING_REPORT_STATUSES,
)
from yookassa_integration import PaymentGatewayError, rub_to_kopecks

logger = logging.getLogger(__name__)

DEFAULT_DETOX_FORM_URL = "https://forms.yandex.ru/u/6912423849af471482e765d3"

# Сколько секунд заказ в payment_confirmed с неоплаченным платежом считается «проверяется сейчас».
# Дольше: подтверждение застряло, нужен оператор.
CONFIRMATION_GRACE_SEC = 60


class Outcome(str, Enum):
    ORDER_CREATED = "order_created"
    ACTIVE_ORDER_EXISTS = "active_order_exists"
    GATEWAY_FAILED = "gateway_failed"
    STORE_FAILED = "store_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    ORDER_NOT_FOUND = "order_not_found"
    TOKEN_MISMATCH = "token_mismatch"
    ALREADY_CONFIRMED = "already_confirmed"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMATION_IN_PROGRESS = "confirmation_in_progress"
    CONFIRMATION_STUCK = "confirmation_stuck"
    ORDER_UPDATE_FAILED = "order_update_failed"
    ROLLED_BACK = "rolled_back"
    CRITICAL_INCONSISTENCY = "critical_inconsistency"
    DELIVERY_FAILED = "delivery_failed"
    CONFIRMED = "confirmed"
    ADMIN_PANEL_SHOWN = "admin_panel_shown"
    NO_PENDING_ORDERS = "no_pending_orders"
    REPORT_SENT = "report_sent"
    REPORT_NOT_PENDING = "report_not_pending"
    AGENT_REPLIED = "agent_replied"
    AGENT_FAILED = "agent_failed"


@dataclass(frozen=True)
class Service:
    code: str
    title: str
    price: int  # целые рубли
    description: str

    @property
    def amount(self) -> int:
        return rub_to_kopecks(self.price)


def build_services(detox_price: int = 450, modeling_price: int = 350) -> dict[str, Service]:
    return {
        SERVICE_DETOX: Service(
            code=SERVICE_DETOX,
            title="Финансовый детокс",
            price=int(detox_price),
            description="Оплата: Финансовый детокс",
        ),
        SERVICE_MODELING: Service(
            code=SERVICE_MODELING,
            title="Финансовое моделирование",
            price=int(modeling_price),
            description="Оплата: Финансовое моделирование",
        ),
    }


@dataclass(frozen=True)
class Button:
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None
    web_app_url: Optional[str] = None


@dataclass(frozen=True)
class InboundUpdate:
    """Входящее обновление Telegram, уже разобранное транспортом."""
    chat_id: int
    user_id: int
    message_kind: str  # "text" | "button"
    text: Optional[str] = None
    token: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def thread_id(self) -> str:
        return f"telegram-user-{self.user_id}"


class Messenger(Protocol):
    async def send_message(self, chat_id: int, text: str, buttons: Optional[list[list[Button]]] = None) -> Optional[int]:
        ...


class Agent(Protocol):
    async def generate(self, prompt: str, thread_id: str) -> str:
        ...


def services_menu(services: dict[str, Service]) -> list[list[Button]]:
    return [
        [Button(f"{s.title} — {s.price}₽", callback_data=order_token(code))]
        for code, s in services.items()
    ]


@dataclass
class OrderFlow:
    store: Any
    gateway: Any
    messenger: Messenger
    agent: Optional[Agent] = None
    services: dict[str, Service] = field(default_factory=build_services)
    detox_form_url: str = DEFAULT_DETOX_FORM_URL
    host_url: str = ""
    admin_chat_id: Optional[int] = None
    admin_telegram_ids: frozenset = frozenset()
    support_contact: str = ""
    _user_locks: dict = field(default_factory=dict, init=False, repr=False)
    _lock_users: defaultdict = field(default_factory=lambda: defaultdict(int), init=False, repr=False)

    # ============== вход ==============

    async def handle_update(self, update: InboundUpdate) -> Outcome:
        """ensureUser → routeAction → выполнение действия."""
        db_user, is_admin = self.ensure_user(update)
        action = route_action(
            is_admin=is_admin,
            message_kind=update.message_kind,
            text=update.text,
            token=update.token,
        )
        logger.info("Update from %s: action=%s", update.user_id, action)
        return await self.dispatch(update, action, db_user)

    def ensure_user(self, update: InboundUpdate) -> tuple[Optional[dict], bool]:
        """Upsert пользователя. Если БД недоступна — работаем без неё, админа берём из настроек."""
        try:
            user = self.store.upsert_user(
                str(update.user_id),
                username=update.username,
                first_name=update.first_name,
                last_name=update.last_name,
            )
        except sqlite3.Error as e:
            logger.warning("Database unavailable, continuing without DB: %s", e)
            return None, str(update.user_id) in self.admin_telegram_ids
        return user, bool(user.get("is_admin"))

    async def dispatch(self, update: InboundUpdate, action: Action, db_user: Optional[dict]) -> Outcome:
        if db_user is None and not isinstance(action, Fallback):
            await self._send(update.chat_id, "⚠️ Эта функция временно недоступна. Пожалуйста, обратитесь в поддержку.")
            return Outcome.STORE_UNAVAILABLE

        if isinstance(action, CreateOrder):
            return await self.create_order(update, db_user, action.service_type)
        if isinstance(action, ConfirmPayment):
            return await self.confirm_payment(update, action.order_id, action.payment_id)
        if isinstance(action, ShowAdminPanel):
            return await self.show_admin_panel(update)
        if isinstance(action, SendReport):
            return await self.send_report(update, action.order_id)
        if isinstance(action, Fallback):
            return await self.use_agent(update)
        raise AssertionError(f"Unhandled action: {action!r}")

    @asynccontextmanager
    async def _user_lock(self, user_id: int):
        """Блокировка на пользователя; убирается из словаря, когда её никто не держит и не ждёт."""
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] <= 0:
                del self._lock_users[user_id]
                self._user_locks.pop(user_id, None)

    # ============== создание заказа ==============

    async def create_order(self, update: InboundUpdate, db_user: dict, service_type: str) -> Outcome:
        service = self.services[service_type]
        user_id = int(db_user["id"])
        chat_id = update.chat_id
        # Проверка «нет активного заказа» и запись заказа не атомарны: сериализуем по пользователю,
        # а окончательно дубль отсекает уникальный индекс в БД.
        async with self._user_lock(user_id):
            try:
                active = self.store.get_active_orders(user_id)
            except sqlite3.Error:
                logger.exception("Active orders lookup failed for user_id=%s", user_id)
                await self._send(chat_id, "❌ Не удалось создать заказ. Попробуйте позже.")
                return Outcome.STORE_FAILED
            if active:
                current = active[0]
                logger.info("User %s already has active order #%s (%s)", user_id, current["id"], current["status"])
                await self._send(
                    chat_id,
                    f"⏳ У вас уже есть активный заказ №{current['id']}. "
                    "Завершите его оплату или дождитесь выполнения, прежде чем оформлять новый.",
                )
                return Outcome.ACTIVE_ORDER_EXISTS

            try:
                payment = await self.gateway.create_payment(
                    service.price,
                    service.description,
                    metadata={"telegram_user_id": str(update.user_id), "service_type": service.code},
                )
            except PaymentGatewayError as e:
                logger.error("Payment creation failed for user_id=%s: %s", user_id, e)
                await self._send(chat_id, "❌ Не удалось создать платёж. Попробуйте позже.")
                return Outcome.GATEWAY_FAILED

            try:
                order_id, _ = self.store.create_order_with_payment(
                    user_id=user_id,
                    service_type=service.code,
                    price=service.price,
                    gateway_payment_id=payment.payment_id,
                    payment_url=payment.payment_url,
                    amount=service.amount,
                    form_url=self.detox_form_url if service.code == SERVICE_DETOX else None,
                )
            except sqlite3.IntegrityError as e:
                # Платёж в ЮKassa уже создан, но заказа под него нет: сверяется вручную.
                logger.error(
                    "Orphan gateway payment %s: order not stored for user_id=%s (%s)",
                    payment.payment_id, user_id, e,
                )
                await self._send(chat_id, "⏳ У вас уже есть активный заказ. Новый заказ не создан.")
                return Outcome.ACTIVE_ORDER_EXISTS
            except sqlite3.Error:
                logger.exception(
                    "Orphan gateway payment %s: order not stored for user_id=%s",
                    payment.payment_id, user_id,
                )
                await self._send(chat_id, "❌ Не удалось создать заказ. Попробуйте позже.")
                return Outcome.STORE_FAILED

        logger.info("Order #%s created: %s, payment %s", order_id, service.code, payment.payment_id)
        await self._send(
            chat_id,
            f"💳 Заказ №{order_id} создан!\n\n"
            f"Услуга: {service.title}\n"
            f"Сумма: {service.price}₽\n\n"
            f"👉 Оплатите:\n{payment.payment_url}",
            buttons=[
                [Button("Перейти к оплате", url=payment.payment_url)],
                [Button("✅ Я оплатил", callback_data=payment_token(order_id, payment.payment_id))],
            ],
        )
        return Outcome.ORDER_CREATED

    # ============== подтверждение оплаты ==============

    async def confirm_payment(self, update: InboundUpdate, order_id: int, payment_id: str) -> Outcome:
        chat_id = update.chat_id
        logger.info("Confirming payment: order #%s, payment %s", order_id, payment_id)

        try:
            order = self.store.get_order(order_id)
            payment = self.store.get_payment_by_order_id(order_id) if order else None
        except sqlite3.Error:
            logger.exception("Order lookup failed for order #%s", order_id)
            await self._send(chat_id, "❌ Не удалось проверить заказ. Попробуйте ещё раз чуть позже.")
            return Outcome.STORE_FAILED

        if not order:
            await self._send(chat_id, "❌ Заказ не найден.")
            return Outcome.ORDER_NOT_FOUND

        if not payment or payment["gateway_payment_id"] != payment_id:
            logger.warning("Payment token mismatch for order #%s: got %r", order_id, payment_id)
            await self._send(chat_id, "❌ Платёж не относится к этому заказу. Проверьте ссылку или оформите заказ заново.")
            return Outcome.TOKEN_MISMATCH

        if payment["status"] == PAYMENT_SUCCEEDED:
            await self._send(chat_id, f"✅ Оплата заказа №{order_id} уже подтверждена.")
            return Outcome.ALREADY_CONFIRMED

        try:
            status = await self.gateway.get_payment_status(payment_id)
        except PaymentGatewayError as e:
            logger.warning("Payment status check failed for %s: %s", payment_id, e)
            await self._send(chat_id, "❌ Не удалось проверить оплату. Попробуйте ещё раз через минуту.")
            return Outcome.GATEWAY_FAILED

        if not status.paid:
            await self._send(chat_id, "❌ Оплата ещё не подтверждена. Попробуйте позже.")
            return Outcome.PAYMENT_PENDING

        if status.amount is not None and status.amount != int(payment["amount"]):
            logger.warning(
                "Amount mismatch for order #%s: gateway %s != stored %s",
                order_id, status.amount, payment["amount"],
            )
            await self._send(chat_id, "❌ Сумма оплаты не совпадает с заказом. Обратитесь в поддержку.")
            return Outcome.TOKEN_MISMATCH

        # Шаг 1 саги: заказ -> payment_confirmed.
        try:
            advanced = self.store.update_order_status(
                order_id, ORDER_PAYMENT_CONFIRMED, expected=(ORDER_PAYMENT_PENDING, ORDER_CREATED)
            )
        except sqlite3.Error:
            logger.exception("Failed to mark order #%s payment_confirmed", order_id)
            await self._send(chat_id, self._support_text("❌ Не удалось обновить заказ."))
            return Outcome.ORDER_UPDATE_FAILED
        if not advanced:
            return await self._lost_confirmation_race(chat_id, order_id)

        # Шаг 2 саги: платёж -> succeeded. Это последняя запись и защита от повторной обработки.
        write_error: Optional[BaseException] = None
        try:
            marked = self.store.mark_payment_succeeded(payment["id"])
        except sqlite3.Error as e:
            marked = False
            write_error = e
        if not marked:
            if write_error is None and self._payment_already_succeeded(order_id):
                await self._send(chat_id, f"✅ Оплата заказа №{order_id} уже подтверждена.")
                return Outcome.ALREADY_CONFIRMED
            logger.error("Failed to mark payment %s succeeded for order #%s: %s", payment_id, order_id, write_error)
            return await self._compensate(update, order_id, payment_id)

        logger.info("Payment %s succeeded, order #%s confirmed", payment_id, order_id)
        if order["service_type"] == SERVICE_DETOX:
            return await self._deliver_detox(update, order)
        return await self._deliver_modeling(update, order)

    def _payment_already_succeeded(self, order_id: int) -> bool:
        try:
            current = self.store.get_payment_by_order_id(order_id)
        except sqlite3.Error:
            return False
        return bool(current) and current["status"] == PAYMENT_SUCCEEDED

    async def _lost_confirmation_race(self, chat_id: int, order_id: int) -> Outcome:
        if self._payment_already_succeeded(order_id):
            await self._send(chat_id, f"✅ Оплата заказа №{order_id} уже подтверждена.")
            return Outcome.ALREADY_CONFIRMED
        try:
            order = self.store.get_order(order_id)
        except sqlite3.Error:
            order = None
        if order and order["status"] == ORDER_PAYMENT_CONFIRMED:
            age = time.time() - int(order["updated_at"] or 0)
            if age > CONFIRMATION_GRACE_SEC:
                logger.error(
                    "Order #%s stuck in payment_confirmed for %.0f s with pending payment, repeated confirmation refused",
                    order_id, age,
                )
                await self._send(
                    chat_id,
                    self._support_text(
                        f"🚨 По заказу №{order_id} при обработке оплаты произошёл сбой. "
                        "Повторно оплачивать и нажимать кнопку не нужно."
                    ),
                )
                return Outcome.CONFIRMATION_STUCK
        logger.warning("Order #%s is not in payment_pending, confirmation skipped", order_id)
        await self._send(chat_id, "⏳ Оплата по этому заказу уже проверяется. Нажмите кнопку ещё раз через минуту.")
        return Outcome.CONFIRMATION_IN_PROGRESS

    async def _compensate(self, update: InboundUpdate, order_id: int, payment_id: str) -> Outcome:
        """Откат заказа payment_confirmed -> payment_pending после неудачной записи платежа."""
        chat_id = update.chat_id
        rollback_error: Optional[BaseException] = None
        try:
            rolled_back = self.store.update_order_status(
                order_id, ORDER_PAYMENT_PENDING, expected=ORDER_PAYMENT_CONFIRMED
            )
        except sqlite3.Error as e:
            rolled_back = False
            rollback_error = e

        if rolled_back:
            logger.warning("Order #%s rolled back to payment_pending", order_id)
            await self._send(
                chat_id,
                "⚠️ Оплата получена, но подтвердить её сейчас не удалось. "
                "Нажмите «✅ Я оплатил» ещё раз через минуту.",
            )
            return Outcome.ROLLED_BACK

        incident = f"INC-{order_id}-{secrets.token_hex(3).upper()}"
        logger.critical(
            "[%s] Order #%s stuck in payment_confirmed, payment %s not marked succeeded; rollback failed: %s",
            incident, order_id, payment_id, rollback_error,
        )
        if self.admin_chat_id:
            await self._send(
                self.admin_chat_id,
                f"🚨 {incident}\nЗаказ №{order_id} застрял в payment_confirmed, платёж {payment_id} "
                f"не отмечен как succeeded, откат не удался.\nПользователь: {update.user_id}. "
                "Повторно не обрабатывать — сверить вручную.",
            )
        await self._send(
            chat_id,
            self._support_text(
                f"🚨 Оплата получена, но при её обработке произошёл сбой. "
                f"Повторно оплачивать не нужно. Код обращения: {incident}."
            ),
        )
        return Outcome.CRITICAL_INCONSISTENCY

    async def _deliver_detox(self, update: InboundUpdate, order: dict) -> Outcome:
        order_id = int(order["id"])
        try:
            advanced = self.store.update_order_status(order_id, ORDER_FORM_SENT, expected=ORDER_PAYMENT_CONFIRMED)
        except sqlite3.Error:
            logger.exception("Failed to mark order #%s form_sent", order_id)
            advanced = False
        if not advanced:
            logger.error("Order #%s paid but left in payment_confirmed (form not sent)", order_id)
            await self._send(
                update.chat_id,
                self._support_text(f"✅ Оплата заказа №{order_id} подтверждена, но анкету отправить не удалось."),
            )
            return Outcome.DELIVERY_FAILED

        form_url = order.get("form_url") or self.detox_form_url
        await self._send(update.chat_id, f"✅ Оплата подтверждена!\n\n📝 Заполните анкету:\n{form_url}")
        return Outcome.CONFIRMED

    async def _deliver_modeling(self, update: InboundUpdate, order: dict) -> Outcome:
        order_id = int(order["id"])
        try:
            advanced = self.store.update_order_status(order_id, ORDER_COMPLETED, expected=ORDER_PAYMENT_CONFIRMED)
        except sqlite3.Error:
            logger.exception("Failed to mark order #%s completed", order_id)
            advanced = False
        if not advanced:
            logger.error("Order #%s paid but left in payment_confirmed (access not unlocked)", order_id)
            await self._send(
                update.chat_id,
                self._support_text(f"✅ Оплата заказа №{order_id} подтверждена, но открыть доступ не удалось."),
            )
            return Outcome.DELIVERY_FAILED

        buttons = None
        if self.host_url:
            mini_app_url = f"{self.host_url.rstrip('/')}/financial-modeling.html?user_id={update.user_id}&order_id={order_id}"
            buttons = [[Button("📊 Открыть калькулятор", web_app_url=mini_app_url)]]
        await self._send(
            update.chat_id,
            "✅ Оплата подтверждена! Доступ к финансовому моделированию открыт.",
            buttons=buttons,
        )
        return Outcome.CONFIRMED

    # ============== админ ==============

    async def show_admin_panel(self, update: InboundUpdate) -> Outcome:
        try:
            orders = self.store.list_pending_orders()
        except sqlite3.Error:
            logger.exception("Pending orders lookup failed")
            await self._send(update.chat_id, "❌ Не удалось загрузить заказы.")
            return Outcome.STORE_FAILED

        if not orders:
            await self._send(update.chat_id, "📭 Нет заказов для обработки.")
            return Outcome.NO_PENDING_ORDERS

        buttons = [
            [Button(f"📤 Заказ #{o['id']} - {o['service_type']}", callback_data=send_report_token(o["id"]))]
            for o in orders
        ]
        await self._send(
            update.chat_id,
            "📋 *Панель администратора*\n\nЗаказы, ожидающие отправки отчёта:",
            buttons=buttons,
        )
        return Outcome.ADMIN_PANEL_SHOWN

    async def send_report(self, update: InboundUpdate, order_id: int) -> Outcome:
        """Фиксирует отправку отчёта: заказ -> completed, клиенту — уведомление."""
        try:
            order = self.store.get_order(order_id)
            if not order:
                await self._send(update.chat_id, f"❌ Заказ #{order_id} не найден.")
                return Outcome.ORDER_NOT_FOUND
            if order["status"] not in PENDING_REPORT_STATUSES:
                await self._send(update.chat_id, f"❌ Заказ #{order_id} не ожидает отчёта (статус: {order['status']}).")
                return Outcome.REPORT_NOT_PENDING
            done = self.store.update_order_status(order_id, ORDER_COMPLETED, expected=PENDING_REPORT_STATUSES)
            customer = self.store.get_user(int(order["user_id"])) if done else None
        except sqlite3.Error as e:
            logger.exception("Report dispatch failed for order #%s", order_id)
            await self._send(update.chat_id, f"❌ Ошибка отправки: {e}")
            return Outcome.STORE_FAILED

        if not done:
            await self._send(update.chat_id, f"❌ Заказ #{order_id} уже обработан.")
            return Outcome.REPORT_NOT_PENDING

        logger.info("Report for order #%s marked as sent by admin %s", order_id, update.user_id)
        if customer:
            await self._send(
                int(customer["telegram_id"]),
                f"📄 Отчёт по заказу №{order_id} готов и будет отправлен в этот чат.",
            )
        await self._send(update.chat_id, f"✅ Отчёт для заказа #{order_id} отправлен клиенту.")
        return Outcome.REPORT_SENT

    # ============== агент ==============

    async def use_agent(self, update: InboundUpdate) -> Outcome:
        is_start = (update.text or "").strip().startswith("/start")
        menu = services_menu(self.services) if is_start else None
        context_line = (
            f"KONTEXT: chatId={update.chat_id}, userId={update.user_id}, userName={update.username}, "
            f"firstName={update.first_name}, lastName={update.last_name}"
        )
        if update.message_kind == "button":
            prompt = f'Пользователь нажал кнопку: "{update.token}"\n\n{context_line}'
        else:
            prompt = f'Пользователь написал: "{update.text}"\n\n{context_line}'

        if self.agent is None:
            await self._send(
                update.chat_id,
                "Привет! Я помогу навести порядок в финансах. Выберите услугу:",
                buttons=services_menu(self.services),
            )
            return Outcome.AGENT_REPLIED

        try:
            reply = await self.agent.generate(prompt, update.thread_id)
        except Exception as e:
            logger.error("Agent error for %s: %s", update.thread_id, e)
            await self._send(update.chat_id, "❌ Произошла ошибка. Попробуйте позже.")
            return Outcome.AGENT_FAILED

        await self._send(update.chat_id, reply or "…", buttons=menu)
        return Outcome.AGENT_REPLIED

    # ============== утилиты ==============

    def _support_text(self, text: str) -> str:
        contact = f" {self.support_contact}" if self.support_contact else ""
        return f"{text}\nПожалуйста, обратитесь в поддержку{contact}."

    async def _send(self, chat_id: int, text: str, buttons: Optional[list[list[Button]]] = None) -> Optional[int]:
        try:
            return await self.messenger.send_message(chat_id, text, buttons)
        except Exception as e:
            logger.error("Telegram send_message to %s failed: %s", chat_id, e)
            return None
