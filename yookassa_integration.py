"""
Интеграция ЮKassa: создание платежа и проверка его статуса через REST API v3.

Документация:
  https://yookassa.ru/developers/api#create_payment
  https://yookassa.ru/developers/api#get_payment
  https://yookassa.ru/developers/using-api/interaction-format#idempotence

Аутентификация — HTTP Basic (shopId:секретный ключ). Каждый запрос на создание
платежа идёт с собственным Idempotence-Key. Все запросы ограничены таймаутом:
таймаут поднимается как PaymentGatewayError, пользователь может повторить действие.
"""
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.yookassa.ru/v3"
DEFAULT_RETURN_URL = "https://t.me"
DEFAULT_CURRENCY = "RUB"


class PaymentGatewayError(Exception):
    """Платёжный шлюз недоступен или вернул ответ, с которым нельзя работать."""


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _to_amount_str(value: str | int | float | Decimal) -> str:
    if isinstance(value, str):
        s = value.strip().replace(",", ".")
        d = Decimal(s)
    else:
        d = Decimal(str(value))
    d = d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return format(d, "f")


def rub_to_kopecks(value: str | int | float | Decimal) -> int:
    """450 -> 45000. Внутри храним суммы в копейках, наружу показываем целые рубли."""
    return int(Decimal(_to_amount_str(value)) * 100)


def _kopecks_from_amount(raw: Any) -> int | None:
    try:
        return rub_to_kopecks(str(raw))
    except (InvalidOperation, ValueError, TypeError):
        return None


@dataclass(frozen=True)
class YooKassaConfig:
    shop_id: str
    secret_key: str
    api_url: str
    return_url: str
    timeout_sec: float

    @staticmethod
    def from_env() -> "YooKassaConfig":
        shop_id = _env("YOOKASSA_SHOP_ID")
        secret_key = _env("YOOKASSA_SECRET_KEY")
        if not shop_id:
            raise ValueError("Не задана переменная окружения YOOKASSA_SHOP_ID")
        if not secret_key:
            raise ValueError("Не задана переменная окружения YOOKASSA_SECRET_KEY")
        try:
            timeout_sec = float(_env("YOOKASSA_TIMEOUT_SEC", "15") or "15")
        except ValueError:
            timeout_sec = 15.0
        return YooKassaConfig(
            shop_id=shop_id,
            secret_key=secret_key,
            api_url=(_env("YOOKASSA_API_URL", DEFAULT_API_URL) or DEFAULT_API_URL).rstrip("/"),
            return_url=_env("YOOKASSA_RETURN_URL", DEFAULT_RETURN_URL) or DEFAULT_RETURN_URL,
            timeout_sec=timeout_sec,
        )


@dataclass(frozen=True)
class CreatedPayment:
    payment_id: str
    payment_url: str
    status: str


@dataclass(frozen=True)
class PaymentStatus:
    paid: bool
    status: str
    amount: int | None  # копейки


class YooKassaClient:
    """
    Клиент без состояния: на каждый вызов — своя aiohttp-сессия с таймаутом,
    как в остальных интеграциях бота.
    """

    def __init__(self, cfg: YooKassaConfig):
        self.cfg = cfg

    @staticmethod
    def from_env() -> "YooKassaClient":
        return YooKassaClient(YooKassaConfig.from_env())

    def _auth(self) -> aiohttp.BasicAuth:
        return aiohttp.BasicAuth(self.cfg.shop_id, self.cfg.secret_key)

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.cfg.timeout_sec)

    async def _request(self, method: str, path: str, *, json_body: dict | None = None, headers: dict | None = None) -> dict:
        url = f"{self.cfg.api_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout(), auth=self._auth()) as s:
                async with s.request(method, url, json=json_body, headers=headers) as r:
                    if r.status // 100 != 2:
                        body = await r.text()
                        logger.error("YooKassa %s %s -> HTTP %s: %s", method, path, r.status, body[:500])
                        raise PaymentGatewayError(f"YooKassa API error: {r.status}")
                    data = await r.json(content_type=None)
        except PaymentGatewayError:
            raise
        except asyncio.TimeoutError as e:
            logger.warning("YooKassa %s %s: таймаут %s с", method, path, self.cfg.timeout_sec)
            raise PaymentGatewayError("YooKassa timeout") from e
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning("YooKassa %s %s: ошибка запроса: %s", method, path, e)
            raise PaymentGatewayError(f"YooKassa request failed: {e}") from e
        if not isinstance(data, dict):
            raise PaymentGatewayError("YooKassa: ответ не является JSON-объектом")
        return data

    async def create_payment(self, amount: int | str, description: str, *, metadata: dict[str, str] | None = None) -> CreatedPayment:
        """Создаёт платёж с редиректом на страницу оплаты. amount — в рублях."""
        payload = {
            "amount": {"value": _to_amount_str(amount), "currency": DEFAULT_CURRENCY},
            "confirmation": {"type": "redirect", "return_url": self.cfg.return_url},
            "capture": True,
            "description": description[:128],
            "metadata": metadata or {},
        }
        data = await self._request(
            "POST",
            "/payments",
            json_body=payload,
            headers={"Idempotence-Key": str(uuid.uuid4())},
        )
        payment_id = str(data.get("id") or "")
        confirmation = data.get("confirmation") or {}
        if not isinstance(confirmation, dict):
            logger.error("YooKassa: confirmation не объект: %r", confirmation)
            raise PaymentGatewayError("YooKassa: malformed create_payment response")
        payment_url = str(confirmation.get("confirmation_url") or "")
        if not payment_id or not payment_url:
            logger.error("YooKassa: в ответе нет id или confirmation_url: %s", data)
            raise PaymentGatewayError("YooKassa: malformed create_payment response")
        logger.info("YooKassa: создан платёж %s (%s ₽)", payment_id, payload["amount"]["value"])
        return CreatedPayment(payment_id=payment_id, payment_url=payment_url, status=str(data.get("status") or ""))

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        data = await self._request("GET", f"/payments/{payment_id}")
        if str(data.get("id") or "") != payment_id:
            raise PaymentGatewayError("YooKassa: id платежа в ответе не совпадает с запрошенным")
        amount_obj = data.get("amount") or {}
        if not isinstance(amount_obj, dict):
            raise PaymentGatewayError("YooKassa: amount в ответе не является объектом")
        amount = _kopecks_from_amount(amount_obj.get("value"))
        return PaymentStatus(
            paid=data.get("paid") is True,
            status=str(data.get("status") or ""),
            amount=amount,
        )
