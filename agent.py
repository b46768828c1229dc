# -*- coding: utf-8 -*-
"""
ИИ-агент для свободного диалога: всё, что не является кнопкой заказа/оплаты или /admin,
уходит сюда. Ответы через DeepSeek API (совместим с OpenAI SDK).

История хранится в памяти процесса по thread_id («telegram-user-<id>»), поэтому
контекст сохраняется между сообщениями одного пользователя.
"""
from __future__ import annotations

import logging
import os
from collections import defaultdict

from openai import AsyncOpenAI
from openai import APIStatusError

logger = logging.getLogger(__name__)

_PROMPT_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "system_prompt.txt")

DEEPSEEK_BASE_URL = "https://api.deepseek.com"
DEFAULT_MODEL = "deepseek-chat"

# Сколько последних пар сообщений хранить. 0 = не хранить.
MAX_HISTORY_MESSAGES = 10

FALLBACK_SYSTEM_PROMPT = (
    "Ты — дружелюбный помощник по личным финансам. Отвечай кратко, по-русски. "
    "Услуги: «Финансовый детокс» (анкета и разбор бюджета) и «Финансовое моделирование» "
    "(мини-приложение для планирования бюджета до следующего дохода)."
)


def _load_system_prompt(path: str = _PROMPT_PATH) -> str:
    """Загружает системный промпт из system_prompt.txt; если файла нет — встроенный короткий промпт."""
    try:
        with open(path, encoding="utf-8") as f:
            content = f.read().strip()
        return content or FALLBACK_SYSTEM_PROMPT
    except FileNotFoundError:
        logger.warning("Файл system_prompt.txt не найден, используется встроенный промпт.")
        return FALLBACK_SYSTEM_PROMPT
    except OSError as e:
        logger.warning("Не удалось прочитать system_prompt.txt: %s", e)
        return FALLBACK_SYSTEM_PROMPT


class FinanceAgent:
    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = DEFAULT_MODEL,
        system_prompt: str | None = None,
        max_history: int = MAX_HISTORY_MESSAGES,
    ):
        self.client = client
        self.model = model
        self.system_prompt = system_prompt if system_prompt is not None else _load_system_prompt()
        self.max_history = max_history
        self.history: defaultdict[str, list[dict]] = defaultdict(list)

    @staticmethod
    def from_env() -> "FinanceAgent | None":
        api_key = os.getenv("DEEPSEEK_API_KEY")
        if not api_key:
            logger.warning("DEEPSEEK_API_KEY не задан — ИИ-агент отключён, на свободный текст отвечает меню.")
            return None
        client = AsyncOpenAI(api_key=api_key, base_url=DEEPSEEK_BASE_URL, timeout=60)
        return FinanceAgent(client, model=os.getenv("DEEPSEEK_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL)

    def get_history_messages(self, thread_id: str) -> list[dict]:
        """Список сообщений для API в формате role/content."""
        messages = [{"role": "system", "content": self.system_prompt}]
        for item in self.history[thread_id]:
            messages.append({"role": item["role"], "content": item["content"]})
        return messages

    def add_to_history(self, thread_id: str, role: str, content: str) -> None:
        self.history[thread_id].append({"role": role, "content": content})
        if self.max_history > 0:
            while len(self.history[thread_id]) > self.max_history * 2:
                self.history[thread_id].pop(0)

    def clear_history(self, thread_id: str) -> None:
        self.history[thread_id].clear()

    async def generate(self, prompt: str, thread_id: str) -> str:
        """Один шаг диалога. При ошибке API сообщение пользователя убирается из истории и ошибка пробрасывается."""
        self.add_to_history(thread_id, "user", prompt)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self.get_history_messages(thread_id),
                max_tokens=1500,
                temperature=0.8,
                stream=False,
            )
        except APIStatusError as e:
            if self.history[thread_id]:
                self.history[thread_id].pop()
            if e.status_code == 402:
                logger.error("DeepSeek: исчерпан баланс API")
            raise
        except Exception:
            if self.history[thread_id]:
                self.history[thread_id].pop()
            raise
        reply = (response.choices[0].message.content or "").strip()
        self.add_to_history(thread_id, "assistant", reply)
        return reply or "Не удалось сформировать ответ."
