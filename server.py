"""
HTTP-сервер бота: webhook Telegram, проверка здоровья и API мини-приложения
«Финансовое моделирование».

Эндпоинты:
  GET  /health                         — проверка живости
  GET  /api                            — статус и настроенные интеграции
  POST /telegram/webhook               — update от Telegram (JSON), обрабатывается ботом
  POST /api/financial-modeling/save    — сохранение модели бюджета и статический разбор

Запуск (пример):
  uvicorn server:app --host 0.0.0.0 --port 8000
  или: python server.py (порт из PORT, по умолчанию 8000)

Webhook в Telegram: https://ВАШ_ХОСТ/telegram/webhook. Если задан TELEGRAM_WEBHOOK_SECRET,
его же передайте в setWebhook (secret_token) — запросы без заголовка будут отклонены.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from budget_analysis import analyze_budget, summarize
from storage import OrdersDB

load_dotenv()

logger = logging.getLogger("server")
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)

app = FastAPI()

_bot_app = None
_bot_app_lock = asyncio.Lock()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Логирует запросы к webhook и API мини-приложения вместе с IP."""
    if request.url.path.startswith(("/telegram/", "/api/")):
        client = request.client
        host = client.host if client else request.headers.get("x-forwarded-for", "?")
        logger.info("Request: %s %s from %s", request.method, request.url.path, host)
    return await call_next(request)


@app.get("/health")
async def health() -> dict:
    return {"status": "healthy", "timestamp": _now_iso()}


@app.get("/api")
async def api_status() -> dict:
    return {
        "status": "ok",
        "timestamp": _now_iso(),
        "telegram_configured": bool(os.getenv("TELEGRAM_BOT_TOKEN")),
        "database_configured": bool(os.getenv("ORDERS_DB_PATH")),
        "yookassa_configured": bool(os.getenv("YOOKASSA_SHOP_ID") and os.getenv("YOOKASSA_SECRET_KEY")),
    }


async def _get_bot_app():
    """Одно приложение бота на процесс: блокировки по пользователям живут между запросами."""
    global _bot_app
    async with _bot_app_lock:
        if _bot_app is None:
            from bot import build_application

            bot_app = build_application()
            await bot_app.initialize()
            _bot_app = bot_app
    return _bot_app


@app.post("/telegram/webhook")
async def telegram_webhook(request: Request) -> PlainTextResponse:
    secret = os.getenv("TELEGRAM_WEBHOOK_SECRET")
    if secret and request.headers.get("x-telegram-bot-api-secret-token") != secret:
        logger.warning("Telegram webhook: неверный secret token")
        return PlainTextResponse("forbidden", status_code=403)
    body = (await request.body()).decode("utf-8")
    try:
        from bot import process_webhook_update

        await process_webhook_update(body, app=await _get_bot_app())
    except Exception as e:
        logger.exception("Telegram webhook error: %s", e)
        return PlainTextResponse("error", status_code=500)
    return PlainTextResponse("OK")


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return default


def _parse_order_id(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


@app.post("/api/financial-modeling/save")
async def financial_modeling_save(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"success": False, "error": "Invalid JSON"}, status_code=400)
    if not isinstance(body, dict) or not body.get("userId"):
        return JSONResponse({"success": False, "error": "Missing userId"}, status_code=400)

    telegram_id = str(body["userId"])
    order_id = _parse_order_id(body.get("orderId"))
    expenses = [e for e in (body.get("expenses") or []) if isinstance(e, dict)]
    wishes = [w for w in (body.get("wishes") or []) if isinstance(w, dict)]
    current_balance = _to_int(body.get("currentBalance"))
    total_expenses = _to_int(body.get("totalExpenses"))
    logger.info(
        "Financial modeling: user=%s order=%s expenses=%s wishes=%s",
        telegram_id, order_id, len(expenses), len(wishes),
    )

    try:
        db = OrdersDB.from_env()
        user = db.get_user_by_telegram_id(telegram_id)
        if not user:
            user = db.upsert_user(telegram_id, username=f"user{telegram_id}", first_name="User", last_name="")
        model_id = db.save_financial_model(
            user_id=int(user["id"]),
            order_id=order_id,
            current_balance=current_balance,
            next_income=_to_int(body.get("nextIncome")),
            next_income_date=body.get("nextIncomeDate") or None,
            expenses=expenses,
            wishes=wishes,
            total_expenses=total_expenses,
        )
    except sqlite3.Error as e:
        logger.exception("Financial modeling: DB error: %s", e)
        return JSONResponse({"success": False, "error": "Database error"}, status_code=500)

    summary = summarize(current_balance, total_expenses, body.get("nextIncomeDate"))
    logger.info("Financial modeling: model %s saved, daily budget %.0f", model_id, summary.daily_budget)
    return JSONResponse(
        {
            "success": True,
            "modelId": model_id,
            "dailyBudget": round(summary.daily_budget, 2),
            "daysUntilIncome": summary.days_until_income,
            "analysis": analyze_budget(summary, expenses, wishes),
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
