"""
Классификация входящих обновлений Telegram в действия бота.

Кнопки передают действие через callback_data (лимит Telegram — 64 байта):
  order_detox / order_modeling           — создать заказ
  payment_<orderId>_<paymentId>          — «Я оплатил», проверка оплаты
  send_report_<orderId>                  — отправка отчёта (только админ)
Текст /admin от админа открывает панель администратора. Всё остальное уходит агенту.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

SERVICE_DETOX = "detox"
SERVICE_MODELING = "modeling"
SERVICE_TYPES = (SERVICE_DETOX, SERVICE_MODELING)

CALLBACK_DATA_MAX_BYTES = 64

ORDER_TOKENS = {
    "order_detox": SERVICE_DETOX,
    "order_modeling": SERVICE_MODELING,
}

# paymentId забираем целиком после второго подчёркивания: у ЮKassa в id бывают «_» и «-».
PAYMENT_TOKEN_REGEX = re.compile(r"payment_(\d+)_(.+)", re.DOTALL | re.ASCII)
SEND_REPORT_TOKEN_REGEX = re.compile(r"send_report_(\d+)", re.ASCII)

ADMIN_COMMAND = "/admin"


@dataclass(frozen=True)
class CreateOrder:
    service_type: str


@dataclass(frozen=True)
class ConfirmPayment:
    order_id: int
    payment_id: str


@dataclass(frozen=True)
class ShowAdminPanel:
    pass


@dataclass(frozen=True)
class SendReport:
    order_id: int


@dataclass(frozen=True)
class Fallback:
    pass


Action = Union[CreateOrder, ConfirmPayment, ShowAdminPanel, SendReport, Fallback]


def route_action(
    *,
    is_admin: bool,
    message_kind: str,
    text: str | None = None,
    token: str | None = None,
) -> Action:
    """Чистая функция: по типу сообщения, тексту/токену кнопки и флагу админа возвращает действие."""
    if message_kind == "text":
        if is_admin and (text or "").strip() == ADMIN_COMMAND:
            return ShowAdminPanel()
        return Fallback()

    if message_kind != "button" or not token:
        return Fallback()

    if token in ORDER_TOKENS:
        return CreateOrder(ORDER_TOKENS[token])

    m = PAYMENT_TOKEN_REGEX.fullmatch(token)
    if m:
        return ConfirmPayment(order_id=int(m.group(1)), payment_id=m.group(2))

    m = SEND_REPORT_TOKEN_REGEX.fullmatch(token)
    if m and is_admin:
        return SendReport(order_id=int(m.group(1)))

    return Fallback()


def _check_callback_size(token: str) -> str:
    if len(token.encode("utf-8")) > CALLBACK_DATA_MAX_BYTES:
        raise ValueError(f"callback_data длиннее {CALLBACK_DATA_MAX_BYTES} байт: {token!r}")
    return token


def order_token(service_type: str) -> str:
    for token, code in ORDER_TOKENS.items():
        if code == service_type:
            return token
    raise ValueError(f"Неизвестный тип услуги: {service_type}")


def payment_token(order_id: int, payment_id: str) -> str:
    return _check_callback_size(f"payment_{int(order_id)}_{payment_id}")


def send_report_token(order_id: int) -> str:
    return _check_callback_size(f"send_report_{int(order_id)}")
