"""
SQLite-хранилище бота: пользователи, заказы, платежи, финансовые модели мини-приложения.

Гарантии, на которые опирается сценарий оплаты:
  * заказ и платёж создаются одной транзакцией (create_order_with_payment);
  * у пользователя не больше одного активного заказа — частичный уникальный индекс;
  * смена статусов — compare-and-set (UPDATE ... WHERE status=?), вызывающий
    получает True, только если строка действительно изменилась.
Ошибки sqlite3 не перехватываются: их разбирает сценарий, который вызвал запись.
"""
from __future__ import annotations

import json
import os
import sqlite3
import time
from typing import Any, Iterable

ORDER_CREATED = "created"
ORDER_PAYMENT_PENDING = "payment_pending"
ORDER_PAYMENT_CONFIRMED = "payment_confirmed"
ORDER_FORM_SENT = "form_sent"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"

ACTIVE_ORDER_STATUSES = (
    ORDER_CREATED,
    ORDER_PAYMENT_PENDING,
    ORDER_PAYMENT_CONFIRMED,
    ORDER_FORM_SENT,
    ORDER_PROCESSING,
)
# Заказы, по которым админ должен отправить отчёт.
PENDING_REPORT_STATUSES = (ORDER_FORM_SENT, ORDER_PROCESSING)

PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_CANCELED = "canceled"
PAYMENT_FAILED = "failed"

_ACTIVE_SQL = ", ".join(f"'{s}'" for s in ACTIVE_ORDER_STATUSES)


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _rows(cur: sqlite3.Cursor) -> list[dict[str, Any]]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


def _row(cur: sqlite3.Cursor) -> dict[str, Any] | None:
    row = cur.fetchone()
    if not row:
        return None
    cols = [d[0] for d in cur.description]
    return dict(zip(cols, row))


class OrdersDB:
    """
    Реестр пользователей, заказов и платежей в SQLite.
    Каждый вызов открывает своё соединение,
    поэтому объект можно разделять между обработчиками.
    """

    def __init__(self, path: str, *, admin_telegram_ids: Iterable[str] = ()):
        self.path = path
        self.admin_telegram_ids = {str(x) for x in admin_telegram_ids}
        self._init()

    @staticmethod
    def from_env() -> "OrdersDB":
        path = _env("ORDERS_DB_PATH", "orders.sqlite3") or "orders.sqlite3"
        admins = [x.strip() for x in (_env("ADMIN_TELEGRAM_IDS", "") or "").split(",") if x.strip()]
        return OrdersDB(path, admin_telegram_ids=admins)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def _init(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_id TEXT NOT NULL UNIQUE,
                    username TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    service_type TEXT NOT NULL,
                    price INTEGER NOT NULL,
                    form_url TEXT,
                    status TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id INTEGER NOT NULL UNIQUE REFERENCES orders(id),
                    gateway_payment_id TEXT NOT NULL UNIQUE,
                    payment_url TEXT,
                    status TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    paid_at INTEGER
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS financial_models (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    order_id INTEGER,
                    current_balance INTEGER NOT NULL DEFAULT 0,
                    next_income INTEGER NOT NULL DEFAULT 0,
                    next_income_date TEXT,
                    expenses TEXT NOT NULL DEFAULT '[]',
                    wishes TEXT NOT NULL DEFAULT '[]',
                    total_expenses INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
            conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_one_active ON orders(user_id) WHERE status IN ({_ACTIVE_SQL})"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_financial_models_user_order "
                "ON financial_models(user_id, IFNULL(order_id, 0))"
            )
        finally:
            conn.close()

    # ---- пользователи ----

    def upsert_user(
        self,
        telegram_id: str,
        *,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> dict[str, Any]:
        """Создаёт пользователя при первом обращении, при повторных — обновляет профиль. Флаг админа не снимается."""
        telegram_id = str(telegram_id)
        is_admin = 1 if telegram_id in self.admin_telegram_ids else 0
        now = int(time.time())
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO users (telegram_id, username, first_name, last_name, is_admin, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(telegram_id) DO UPDATE SET
                    username=excluded.username,
                    first_name=excluded.first_name,
                    last_name=excluded.last_name,
                    is_admin=MAX(users.is_admin, excluded.is_admin),
                    updated_at=excluded.updated_at
                """,
                (telegram_id, username, first_name, last_name, is_admin, now, now),
            )
            cur = conn.execute("SELECT * FROM users WHERE telegram_id=?", (telegram_id,))
            user = _row(cur)
        finally:
            conn.close()
        if user is None:
            raise sqlite3.DatabaseError(f"user {telegram_id} not found after upsert")
        user["is_admin"] = bool(user["is_admin"])
        return user

    def get_user_by_telegram_id(self, telegram_id: str) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            user = _row(conn.execute("SELECT * FROM users WHERE telegram_id=?", (str(telegram_id),)))
        finally:
            conn.close()
        if user:
            user["is_admin"] = bool(user["is_admin"])
        return user

    def get_user(self, user_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            user = _row(conn.execute("SELECT * FROM users WHERE id=?", (user_id,)))
        finally:
            conn.close()
        if user:
            user["is_admin"] = bool(user["is_admin"])
        return user

    # ---- заказы и платежи ----

    def get_active_orders(self, user_id: int) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.execute(
                f"SELECT * FROM orders WHERE user_id=? AND status IN ({_ACTIVE_SQL}) ORDER BY id",
                (user_id,),
            )
            return _rows(cur)
        finally:
            conn.close()

    def create_order_with_payment(
        self,
        *,
        user_id: int,
        service_type: str,
        price: int,
        gateway_payment_id: str,
        payment_url: str,
        amount: int,
        form_url: str | None = None,
    ) -> tuple[int, int]:
        """
        Атомарно создаёт заказ (payment_pending) и платёж (pending).
        Возвращает (order_id, payment_id). Если у пользователя уже есть активный
        заказ, поднимается sqlite3.IntegrityError и ничего не записывается.
        """
        now = int(time.time())
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO orders (user_id, service_type, price, form_url, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, service_type, int(price), form_url, ORDER_PAYMENT_PENDING, now, now),
                )
                order_id = int(cur.lastrowid)
                cur = conn.execute(
                    """
                    INSERT INTO payments (order_id, gateway_payment_id, payment_url, status, amount, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (order_id, gateway_payment_id, payment_url, PAYMENT_PENDING, int(amount), now),
                )
                payment_id = int(cur.lastrowid)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            return order_id, payment_id
        finally:
            conn.close()

    def get_order(self, order_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            return _row(conn.execute("SELECT * FROM orders WHERE id=?", (order_id,)))
        finally:
            conn.close()

    def update_order_status(self, order_id: int, new_status: str, *, expected: str | Iterable[str] | None = None) -> bool:
        """
        Меняет статус заказа. При заданном expected — только если текущий статус
        входит в expected. True, если строка изменилась.
        """
        now = int(time.time())
        sql = "UPDATE orders SET status=?, updated_at=? WHERE id=?"
        params: list[Any] = [new_status, now, order_id]
        if expected is not None:
            allowed = [expected] if isinstance(expected, str) else list(expected)
            sql += f" AND status IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)
        conn = self._connect()
        try:
            return conn.execute(sql, params).rowcount > 0
        finally:
            conn.close()

    def get_payment_by_order_id(self, order_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            return _row(conn.execute("SELECT * FROM payments WHERE order_id=?", (order_id,)))
        finally:
            conn.close()

    def mark_payment_succeeded(self, payment_id: int) -> bool:
        """
        Идемпотентно помечает платёж оплаченным.
        Возвращает True, если статус изменили с pending -> succeeded.
        """
        now = int(time.time())
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE payments SET status=?, paid_at=? WHERE id=? AND status=?",
                (PAYMENT_SUCCEEDED, now, payment_id, PAYMENT_PENDING),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    def update_payment_status(self, payment_id: int, new_status: str) -> bool:
        """Статусы отмены/ошибки из шлюза. succeeded ставится только через mark_payment_succeeded."""
        if new_status == PAYMENT_SUCCEEDED:
            return self.mark_payment_succeeded(payment_id)
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE payments SET status=? WHERE id=? AND status=?",
                (new_status, payment_id, PAYMENT_PENDING),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    def list_pending_orders(self) -> list[dict[str, Any]]:
        placeholders = ", ".join("?" for _ in PENDING_REPORT_STATUSES)
        conn = self._connect()
        try:
            cur = conn.execute(
                f"""
                SELECT o.*, u.telegram_id, u.username
                FROM orders o JOIN users u ON u.id = o.user_id
                WHERE o.status IN ({placeholders})
                ORDER BY o.created_at, o.id
                """,
                PENDING_REPORT_STATUSES,
            )
            return _rows(cur)
        finally:
            conn.close()

    # ---- мини-приложение «Финансовое моделирование» ----

    def save_financial_model(
        self,
        *,
        user_id: int,
        order_id: int | None,
        current_balance: int,
        next_income: int,
        next_income_date: str | None,
        expenses: list[dict[str, Any]],
        wishes: list[dict[str, Any]],
        total_expenses: int,
    ) -> int:
        """Одна модель на пару (пользователь, заказ): повторное сохранение перезаписывает данные."""
        now = int(time.time())
        values = (
            int(current_balance),
            int(next_income),
            next_income_date,
            json.dumps(expenses, ensure_ascii=False),
            json.dumps(wishes, ensure_ascii=False),
            int(total_expenses),
            now,
        )
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    "SELECT id FROM financial_models WHERE user_id=? AND IFNULL(order_id, 0)=IFNULL(?, 0)",
                    (user_id, order_id),
                )
                row = cur.fetchone()
                if row:
                    model_id = int(row[0])
                    conn.execute(
                        """
                        UPDATE financial_models
                        SET current_balance=?, next_income=?, next_income_date=?, expenses=?, wishes=?,
                            total_expenses=?, updated_at=?
                        WHERE id=?
                        """,
                        values + (model_id,),
                    )
                else:
                    cur = conn.execute(
                        """
                        INSERT INTO financial_models
                            (user_id, order_id, current_balance, next_income, next_income_date, expenses, wishes,
                             total_expenses, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (user_id, order_id) + values,
                    )
                    model_id = int(cur.lastrowid)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            return model_id
        finally:
            conn.close()

    def get_financial_model(self, user_id: int, order_id: int | None = None) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            model = _row(
                conn.execute(
                    "SELECT * FROM financial_models WHERE user_id=? AND IFNULL(order_id, 0)=IFNULL(?, 0)",
                    (user_id, order_id),
                )
            )
        finally:
            conn.close()
        if model:
            model["expenses"] = json.loads(model["expenses"])
            model["wishes"] = json.loads(model["wishes"])
        return model
