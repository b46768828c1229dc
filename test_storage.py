# -*- coding: utf-8 -*-
"""Проверки SQLite-хранилища: upsert пользователей, атомарность заказа, CAS статусов."""
import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from storage import (  # noqa: E402
    ORDER_COMPLETED,
    ORDER_FORM_SENT,
    ORDER_PAYMENT_CONFIRMED,
    ORDER_PAYMENT_PENDING,
    ORDER_PROCESSING,
    PAYMENT_CANCELED,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    OrdersDB,
)


def _db(tmp_path, admins=()):
    return OrdersDB(str(tmp_path / "orders.sqlite3"), admin_telegram_ids=admins)


def _order(db, user_id, gateway_id="pay_1", service="detox"):
    return db.create_order_with_payment(
        user_id=user_id,
        service_type=service,
        price=450,
        gateway_payment_id=gateway_id,
        payment_url="https://pay.example/" + gateway_id,
        amount=45000,
    )


def test_upsert_user_is_idempotent(tmp_path):
    db = _db(tmp_path, admins=["1001"])
    first = db.upsert_user("1001", username="anna", first_name="Анна")
    again = db.upsert_user("1001", username="anna_new", first_name="Анна")
    assert first["id"] == again["id"]
    assert again["username"] == "anna_new"
    assert again["is_admin"] is True
    plain = db.upsert_user("2002")
    assert plain["is_admin"] is False
    assert db.get_user_by_telegram_id("2002")["id"] == plain["id"]


def test_admin_flag_survives_upsert_without_admin_list(tmp_path):
    path = str(tmp_path / "orders.sqlite3")
    OrdersDB(path, admin_telegram_ids=["5"]).upsert_user("5")
    user = OrdersDB(path).upsert_user("5", username="boss")
    assert user["is_admin"] is True


def test_create_order_with_payment_initial_state(tmp_path):
    db = _db(tmp_path)
    user = db.upsert_user("1")
    order_id, payment_id = _order(db, user["id"])
    order = db.get_order(order_id)
    payment = db.get_payment_by_order_id(order_id)
    assert order["status"] == ORDER_PAYMENT_PENDING
    assert order["price"] == 450
    assert payment["id"] == payment_id
    assert payment["status"] == PAYMENT_PENDING
    assert payment["gateway_payment_id"] == "pay_1"
    assert payment["amount"] == 45000
    assert [o["id"] for o in db.get_active_orders(user["id"])] == [order_id]


def test_second_active_order_rejected_by_index(tmp_path):
    db = _db(tmp_path)
    user = db.upsert_user("1")
    order_id, _ = _order(db, user["id"], "pay_1")
    with pytest.raises(sqlite3.IntegrityError):
        _order(db, user["id"], "pay_2")
    # транзакция откатилась целиком: ни заказа, ни платежа
    assert len(db.get_active_orders(user["id"])) == 1
    assert db.get_payment_by_order_id(order_id + 1) is None

    db.update_order_status(order_id, ORDER_COMPLETED)
    new_order_id, _ = _order(db, user["id"], "pay_2")
    assert new_order_id != order_id


def test_duplicate_gateway_payment_id_rolls_back_order(tmp_path):
    db = _db(tmp_path)
    a = db.upsert_user("1")
    b = db.upsert_user("2")
    _order(db, a["id"], "pay_same")
    with pytest.raises(sqlite3.IntegrityError):
        _order(db, b["id"], "pay_same")
    assert db.get_active_orders(b["id"]) == []


def test_update_order_status_compare_and_set(tmp_path):
    db = _db(tmp_path)
    user = db.upsert_user("1")
    order_id, _ = _order(db, user["id"])
    assert db.update_order_status(order_id, ORDER_PAYMENT_CONFIRMED, expected=ORDER_PAYMENT_PENDING) is True
    assert db.update_order_status(order_id, ORDER_PAYMENT_CONFIRMED, expected=ORDER_PAYMENT_PENDING) is False
    assert db.update_order_status(order_id, ORDER_FORM_SENT, expected=(ORDER_PAYMENT_CONFIRMED, ORDER_PROCESSING)) is True
    assert db.get_order(order_id)["status"] == ORDER_FORM_SENT
    assert db.update_order_status(999, ORDER_COMPLETED) is False


def test_mark_payment_succeeded_only_once(tmp_path):
    db = _db(tmp_path)
    user = db.upsert_user("1")
    order_id, payment_id = _order(db, user["id"])
    assert db.mark_payment_succeeded(payment_id) is True
    assert db.mark_payment_succeeded(payment_id) is False
    payment = db.get_payment_by_order_id(order_id)
    assert payment["status"] == PAYMENT_SUCCEEDED
    assert payment["paid_at"] is not None
    # терминальный статус не перезаписывается
    assert db.update_payment_status(payment_id, PAYMENT_CANCELED) is False


def test_list_pending_orders(tmp_path):
    db = _db(tmp_path)
    a = db.upsert_user("1", username="a")
    b = db.upsert_user("2", username="b")
    c = db.upsert_user("3", username="c")
    oa, _ = _order(db, a["id"], "pay_a")
    ob, _ = _order(db, b["id"], "pay_b", service="modeling")
    _order(db, c["id"], "pay_c")
    db.update_order_status(oa, ORDER_FORM_SENT)
    db.update_order_status(ob, ORDER_PROCESSING)
    pending = db.list_pending_orders()
    assert [o["id"] for o in pending] == [oa, ob]
    assert pending[0]["telegram_id"] == "1"


def test_financial_model_upsert(tmp_path):
    db = _db(tmp_path)
    user = db.upsert_user("1")
    first = db.save_financial_model(
        user_id=user["id"], order_id=None, current_balance=10000, next_income=50000,
        next_income_date="2026-11-01", expenses=[{"name": "ЖКХ", "amount": 5000}], wishes=[], total_expenses=5000,
    )
    second = db.save_financial_model(
        user_id=user["id"], order_id=None, current_balance=8000, next_income=50000,
        next_income_date="2026-11-01", expenses=[], wishes=[{"name": "Кофе", "price": 300}], total_expenses=0,
    )
    assert first == second
    model = db.get_financial_model(user["id"])
    assert model["current_balance"] == 8000
    assert model["wishes"] == [{"name": "Кофе", "price": 300}]
    other = db.save_financial_model(
        user_id=user["id"], order_id=7, current_balance=1, next_income=1,
        next_income_date=None, expenses=[], wishes=[], total_expenses=0,
    )
    assert other != first


def test_upsert_user_raises_when_row_vanishes(tmp_path):
    db = _db(tmp_path)
    conn = db._connect()
    try:
        conn.execute(
            "CREATE TRIGGER drop_new_user AFTER INSERT ON users BEGIN DELETE FROM users WHERE id = NEW.id; END"
        )
    finally:
        conn.close()
    with pytest.raises(sqlite3.DatabaseError):
        db.upsert_user("1")
