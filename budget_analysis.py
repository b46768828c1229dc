"""Статический разбор бюджета для мини-приложения «Финансовое моделирование» (без ИИ)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

PRIORITY_EMOJI = {"high": "🔴", "low": "🟢"}


def _format_rub(value: float) -> str:
    """12345.6 -> «12 346»."""
    return f"{round(value):,}".replace(",", " ")


def days_until_income(next_income_date: str | None, today: date | None = None) -> int:
    """Сколько дней до следующего дохода; минимум 1, чтобы не делить на ноль."""
    today = today or date.today()
    if not next_income_date:
        return 1
    try:
        income = datetime.fromisoformat(str(next_income_date)[:10]).date()
    except ValueError:
        return 1
    return max(1, (income - today).days)


@dataclass(frozen=True)
class BudgetSummary:
    current_balance: float
    total_expenses: float
    days_until_income: int
    after_expenses: float
    daily_budget: float


def summarize(
    current_balance: float,
    total_expenses: float,
    next_income_date: str | None,
    today: date | None = None,
) -> BudgetSummary:
    days = days_until_income(next_income_date, today)
    after = float(current_balance) - float(total_expenses)
    return BudgetSummary(
        current_balance=float(current_balance),
        total_expenses=float(total_expenses),
        days_until_income=days,
        after_expenses=after,
        daily_budget=max(0.0, after) / days,
    )


def _verdict(daily_budget: float) -> str:
    if daily_budget > 5000:
        return "✅ Отличный дневной бюджет!"
    if daily_budget > 2000:
        return "📊 Хороший дневной бюджет"
    return "💡 Есть куда расти"


def format_expenses(expenses: list[dict[str, Any]]) -> str:
    return ", ".join(f"{e.get('name', '')}: {e.get('amount', 0)}₽" for e in expenses)


def format_wishes(wishes: list[dict[str, Any]]) -> str:
    return ", ".join(
        f"{w.get('name', '')} ({w.get('price', 0)}₽, приоритет: {PRIORITY_EMOJI.get(w.get('priority'), '🟡')})"
        for w in wishes
    )


def analyze_budget(summary: BudgetSummary, expenses: list[dict[str, Any]], wishes: list[dict[str, Any]]) -> str:
    lines = [
        "## 📊 Анализ вашего бюджета",
        "",
        f"**Текущий баланс:** {_format_rub(summary.current_balance)} ₽",
        f"**До следующего дохода:** {summary.days_until_income} дней",
        f"**Ежедневный бюджет:** {_format_rub(summary.daily_budget)} ₽/день",
        "",
        "### 💡 Основные выводы:",
        _verdict(summary.daily_budget),
    ]
    if expenses:
        lines += ["", f"**Обязательные расходы:** {format_expenses(expenses)}"]
    if wishes:
        lines += [f"**Желания:** {format_wishes(wishes)}"]
    lines += [
        "",
        "### 🎯 Рекомендации:",
        "1. **Отложите 10%** от остатка на непредвиденные расходы",
        "2. **Приоритетные расходы:** оплата ЖКХ, кредиты, продукты",
        "3. **Отложите покупки** с низким приоритетом",
        f"4. **Используйте ежедневный лимит** {summary.daily_budget:.0f} ₽",
    ]
    if summary.after_expenses < 0:
        lines += ["", f"⚠️ Расходы превышают баланс на {_format_rub(-summary.after_expenses)} ₽."]
    return "\n".join(lines)
