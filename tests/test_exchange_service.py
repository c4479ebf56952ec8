"""
Tests for ExchangeService.process_exchange and friends.

Scenarios:
    A  even exchange in Ontario
    B  tax-exempt, customer pays the difference
    C  tax-exempt, customer refunded (store credit / cash / original payment)
    D  return quantity larger than purchased
    E  original order not in an exchangeable state
"""
import re
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import Select, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.core.exceptions import (
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from exchange_engine.models import (
    DocumentSequence,
    InventoryTransaction,
    Order,
    OrderItem,
    OrderPayment,
    Product,
    ReturnLineItem,
    ReturnRecord,
    StoreCredit,
    StoreCreditTransaction,
)
from exchange_engine.schemas.exchange import ExchangeCalculateRequest, ExchangeRequest
from exchange_engine.services import store_credit_service
from exchange_engine.services.exchange_service import ExchangeService, original_order_lock_query
from exchange_engine.services.inventory_service import InventoryService


def build_request(order, order_item, product, return_qty=1, new_qty=1, **extra):
    return ExchangeRequest(
        original_order_id=order.id,
        return_items=[{"original_order_item_id": order_item.id, "quantity": return_qty, **extra.pop("return_extra", {})}],
        new_items=[{"product_id": product.id, "quantity": new_qty}],
        **extra,
    )


async def count(session, model, *criteria):
    query = select(func.count()).select_from(model)
    if criteria:
        query = query.where(*criteria)
    return await session.scalar(query)


async def assert_nothing_written(session_factory, order):
    async with session_factory() as session:
        assert await count(session, ReturnRecord) == 0
        assert await count(session, ReturnLineItem) == 0
        assert await count(session, Order) >= 1
        assert await count(session, Order, Order.is_exchange.is_(True)) == 0
        assert await count(session, InventoryTransaction) == 0
        assert await count(session, OrderPayment) == 0
        assert await count(session, StoreCredit) == 0
        assert await count(session, DocumentSequence) == 0


async def get_product(session_factory, product_id):
    async with session_factory() as session:
        return await session.get(Product, product_id)


# ---------------------------------------------------------------------------
# Scenario A - even exchange
# ---------------------------------------------------------------------------

async def test_even_exchange_in_ontario(db, session_factory, make_product, make_order, user_id):
    returned = await make_product("Blender", price="500.00", qty_on_hand=4)
    replacement = await make_product("Mixer", price="500.00", qty_on_hand=5)
    order, items = await make_order([(returned, 1, 50000)], tax_jurisdiction="ON")

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement), user_id=user_id
    )

    assert result.return_value.total_cents == 56500
    assert result.new_order_value.total_cents == 56500
    assert result.difference_cents == 0
    assert result.payment["type"] == "even_exchange"
    assert re.fullmatch(r"RTN-\d{8}-00001", result.return_number)
    assert re.fullmatch(r"EXC-\d{8}-00001", result.new_order_number)

    async with session_factory() as session:
        new_order = await session.get(Order, result.new_order_id)
        assert new_order.status == "paid"
        assert new_order.amount_paid_cents == new_order.total_cents == 56500
        assert new_order.source == "exchange"
        assert new_order.is_exchange is True
        assert new_order.original_return_id == result.return_id
        assert new_order.hst_cents == 6500
        assert new_order.hst_rate == Decimal("0.13")
        assert new_order.customer_name == "Jane Customer"
        assert new_order.order_metadata["return_id"] == str(result.return_id)

        payments = (await session.execute(
            select(OrderPayment).where(OrderPayment.order_id == new_order.id)
        )).scalars().all()
        assert [(p.payment_method, p.amount_cents) for p in payments] == [("exchange_credit", 56500)]

        record = await session.get(ReturnRecord, result.return_id)
        assert record.status == "completed"
        assert record.return_type == "exchange"
        assert record.exchange_order_id == new_order.id
        assert record.completed_at is not None
        assert record.refund_method is None
        assert record.notes == f"Exchange on order {order.order_number}"
        assert record.initiated_by == user_id

        new_items = (await session.execute(
            select(OrderItem).where(OrderItem.order_id == new_order.id)
        )).scalars().all()
        assert [(i.product_id, i.quantity, i.unit_price_cents, i.unit_cost_cents, i.sort_order) for i in new_items] == [
            (replacement.id, 1, 50000, 30000, 1)
        ]

    assert (await get_product(session_factory, returned.id)).qty_on_hand == 5
    assert (await get_product(session_factory, replacement.id)).qty_on_hand == 4


# ---------------------------------------------------------------------------
# Scenario B - customer pays
# ---------------------------------------------------------------------------

async def test_customer_pays_difference(db, session_factory, make_product, make_order, user_id):
    returned = await make_product("Toaster", price="300.00")
    replacement = await make_product("Espresso Machine", price="800.00")
    order, items = await make_order([(returned, 1, 30000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement, payment_method="credit_card"), user_id=user_id
    )

    assert result.return_value.tax_cents == 0
    assert result.new_order_value.tax_cents == 0
    assert result.difference_cents == 50000
    assert result.payment == {
        "type": "customer_pays",
        "method": "credit_card",
        "amount_cents": 50000,
        "store_credit_code": None,
    }

    async with session_factory() as session:
        new_order = await session.get(Order, result.new_order_id)
        assert new_order.status == "paid"
        assert new_order.amount_paid_cents == new_order.total_cents == 80000
        assert new_order.tax_exempt is True
        assert (new_order.hst_rate, new_order.gst_rate, new_order.pst_rate) == (0, 0, 0)
        assert new_order.hst_cents == new_order.tax_cents == 0
        payments = (await session.execute(
            select(OrderPayment).where(OrderPayment.order_id == new_order.id)
        )).scalars().all()
        assert sorted((p.payment_method, p.amount_cents) for p in payments) == [
            ("credit_card", 50000),
            ("exchange_credit", 30000),
        ]


async def test_customer_pays_defaults_to_cash(db, session_factory, make_product, make_order):
    returned = await make_product(price="300.00")
    replacement = await make_product(price="800.00")
    order, items = await make_order([(returned, 1, 30000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    assert result.payment["method"] == "cash"


async def test_tender_details_are_kept_on_the_difference_payment(db, session_factory, make_product, make_order):
    returned = await make_product(price="300.00")
    replacement = await make_product(price="800.00")
    order, items = await make_order([(returned, 1, 30000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(build_request(
        order, items[0], replacement,
        payment_method="credit_card",
        payment_details={"card_last_four": "4242", "card_brand": "visa", "authorization_code": "A1B2C3"},
    ))

    async with session_factory() as session:
        payments = {
            p.payment_method: p
            for p in (await session.execute(
                select(OrderPayment).where(OrderPayment.order_id == result.new_order_id)
            )).scalars().all()
        }
        card = payments["credit_card"]
        assert (card.card_last_four, card.card_brand, card.authorization_code) == ("4242", "visa", "A1B2C3")
        assert card.cash_tendered_cents is None
        assert payments["exchange_credit"].card_last_four is None


async def test_cash_tendered_and_change_are_recorded(db, session_factory, make_product, make_order):
    returned = await make_product(price="300.00")
    replacement = await make_product(price="800.00")
    order, items = await make_order([(returned, 1, 30000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(build_request(
        order, items[0], replacement,
        payment_details={"cash_tendered_cents": 60000, "change_given_cents": 10000},
    ))

    async with session_factory() as session:
        cash = (await session.execute(
            select(OrderPayment).where(
                OrderPayment.order_id == result.new_order_id,
                OrderPayment.payment_method == "cash",
            )
        )).scalar_one()
        assert (cash.amount_cents, cash.cash_tendered_cents, cash.change_given_cents) == (50000, 60000, 10000)


# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------

async def test_tax_is_rounded_once_per_leg(db, make_product, make_order):
    sticker = await make_product("Sticker", price="0.50")
    magnet = await make_product("Magnet", price="0.50")
    order, items = await make_order([(sticker, 1, 50), (magnet, 1, 50)], tax_jurisdiction="ON")

    result = await ExchangeService(db).process_exchange(ExchangeRequest(
        original_order_id=order.id,
        return_items=[
            {"original_order_item_id": items[0].id, "quantity": 1},
            {"original_order_item_id": items[1].id, "quantity": 1},
        ],
        new_items=[
            {"product_id": sticker.id, "quantity": 1},
            {"product_id": magnet.id, "quantity": 1},
        ],
    ))

    # 100 * 0.13 = 13; rounding each 50 cent line first would give 7 + 7
    assert result.return_value.tax_cents == 13
    assert result.new_order_value.tax_cents == 13
    assert result.difference_cents == 0


async def test_untaxed_lines_are_left_out_of_each_leg(db, session_factory, make_product, make_order):
    lamp = await make_product("Lamp", price="100.00")
    gift_card = await make_product("Gift Card", price="50.00", taxable=False)
    order, items = await make_order([(lamp, 1, 10000), (gift_card, 1, 5000)], tax_jurisdiction="ON")

    result = await ExchangeService(db).process_exchange(ExchangeRequest(
        original_order_id=order.id,
        return_items=[
            {"original_order_item_id": items[0].id, "quantity": 1},
            {"original_order_item_id": items[1].id, "quantity": 1},
        ],
        new_items=[
            {"product_id": lamp.id, "quantity": 1},
            {"product_id": gift_card.id, "quantity": 2},
        ],
    ))

    assert (result.return_value.subtotal_cents, result.return_value.tax_cents) == (15000, 1300)
    assert (result.new_order_value.subtotal_cents, result.new_order_value.tax_cents) == (20000, 1300)
    assert result.difference_cents == 5000

    async with session_factory() as session:
        new_items = (await session.execute(
            select(OrderItem).where(OrderItem.order_id == result.new_order_id).order_by(OrderItem.sort_order)
        )).scalars().all()
        assert [(i.product_name, i.taxable) for i in new_items] == [("Lamp", True), ("Gift Card", False)]
        new_order = await session.get(Order, result.new_order_id)
        assert new_order.hst_cents == new_order.tax_cents == 1300


# ---------------------------------------------------------------------------
# Scenario C - customer refunded
# ---------------------------------------------------------------------------

async def test_refund_as_store_credit_by_default(db, session_factory, make_product, make_order, user_id):
    returned = await make_product("Sofa", price="800.00")
    replacement = await make_product("Chair", price="300.00")
    order, items = await make_order([(returned, 1, 80000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement), user_id=user_id
    )

    assert result.difference_cents == -50000
    assert result.payment["type"] == "customer_refund"
    assert result.payment["method"] == "store_credit"
    assert result.payment["amount_cents"] == 50000
    code = result.payment["store_credit_code"]
    assert re.fullmatch(r"SC-[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{5}", code)

    async with session_factory() as session:
        credit = (await session.execute(select(StoreCredit).where(StoreCredit.code == code))).scalar_one()
        assert credit.original_amount_cents == credit.current_balance_cents == 50000
        assert credit.customer_id == order.customer_id
        assert credit.source_return_id == result.return_id
        ledger = (await session.execute(
            select(StoreCreditTransaction).where(StoreCreditTransaction.store_credit_id == credit.id)
        )).scalars().all()
        assert [(t.transaction_type, t.amount_cents, t.balance_after_cents) for t in ledger] == [("issue", 50000, 50000)]

        new_order = await session.get(Order, result.new_order_id)
        assert new_order.status == "paid"
        assert new_order.amount_paid_cents == new_order.total_cents == 30000

        record = await session.get(ReturnRecord, result.return_id)
        assert record.refund_method == "store_credit"


@pytest.mark.parametrize("method", ["cash", "original_payment"])
async def test_refund_recorded_on_original_order(db, session_factory, make_product, make_order, method):
    returned = await make_product(price="800.00")
    replacement = await make_product(price="300.00")
    order, items = await make_order([(returned, 1, 80000)], tax_exempt=True)

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement, refund_method=method)
    )

    assert result.payment["method"] == method
    assert result.payment["store_credit_code"] is None

    async with session_factory() as session:
        refunds = (await session.execute(
            select(OrderPayment).where(OrderPayment.order_id == order.id)
        )).scalars().all()
        assert [(p.payment_method, p.amount_cents, p.is_refund) for p in refunds] == [(method, -50000, True)]
        assert await count(session, StoreCredit) == 0
        record = await session.get(ReturnRecord, result.return_id)
        assert record.refund_method == method


# ---------------------------------------------------------------------------
# Scenarios D and E - rejected before any write
# ---------------------------------------------------------------------------

async def test_returning_more_than_purchased_fails(db, session_factory, make_product, make_order):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 2, 50000)])

    with pytest.raises(ValidationError):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement, return_qty=3))

    await assert_nothing_written(session_factory, order)


async def test_draft_order_cannot_be_exchanged(db, session_factory, make_product, make_order):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)], status="draft")

    with pytest.raises(InvalidStateError, match="draft"):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    await assert_nothing_written(session_factory, order)


async def test_unknown_order_is_not_found(db, make_product, make_order):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])
    order.id = uuid.uuid4()

    with pytest.raises(NotFoundError):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))


async def test_envelope_requires_both_legs(db):
    service = ExchangeService(db)
    with pytest.raises(ValidationError, match="original_order_id"):
        await service.process_exchange(ExchangeRequest(return_items=[], new_items=[]))
    with pytest.raises(ValidationError, match="return_items"):
        await service.process_exchange(ExchangeRequest(original_order_id=uuid.uuid4(), new_items=[]))
    with pytest.raises(ValidationError, match="new_items"):
        await service.process_exchange(ExchangeRequest(
            original_order_id=uuid.uuid4(),
            return_items=[{"original_order_item_id": uuid.uuid4(), "quantity": 1}],
        ))


async def test_unknown_payment_method_is_rejected(db, session_factory, make_product, make_order):
    returned = await make_product(price="300.00")
    replacement = await make_product(price="800.00")
    order, items = await make_order([(returned, 1, 30000)])

    with pytest.raises(ValidationError, match="payment_method"):
        await ExchangeService(db).process_exchange(
            build_request(order, items[0], replacement, payment_method="bitcoin")
        )

    await assert_nothing_written(session_factory, order)


# ---------------------------------------------------------------------------
# Atomicity and quantity conservation
# ---------------------------------------------------------------------------

async def test_insufficient_stock_rolls_back_everything(db, session_factory, make_product, make_order):
    returned = await make_product(qty_on_hand=3)
    sold_out = await make_product("Sold Out", qty_on_hand=0)
    order, items = await make_order([(returned, 1, 50000)])

    with pytest.raises(ValidationError, match="Insufficient stock"):
        await ExchangeService(db).process_exchange(build_request(order, items[0], sold_out))

    await assert_nothing_written(session_factory, order)
    assert (await get_product(session_factory, returned.id)).qty_on_hand == 3
    assert (await get_product(session_factory, sold_out.id)).qty_on_hand == 0


async def test_reserved_units_are_not_available(db, make_product, make_order):
    returned = await make_product()
    reserved = await make_product(qty_on_hand=2, qty_reserved=2)
    order, items = await make_order([(returned, 1, 50000)])

    with pytest.raises(ValidationError, match="Insufficient stock"):
        await ExchangeService(db).process_exchange(build_request(order, items[0], reserved))


async def test_backorder_and_untracked_products_skip_the_stock_check(db, session_factory, make_product, make_order):
    returned = await make_product()
    backorder = await make_product("Backorder", qty_on_hand=0, allow_backorder=True)
    untracked = await make_product("Gift Card", qty_on_hand=0, track_inventory=False)
    order, items = await make_order([(returned, 2, 50000)])

    request = ExchangeRequest(
        original_order_id=order.id,
        return_items=[{"original_order_item_id": items[0].id, "quantity": 2}],
        new_items=[
            {"product_id": backorder.id, "quantity": 1},
            {"product_id": untracked.id, "quantity": 1},
        ],
    )
    result = await ExchangeService(db).process_exchange(request)

    assert (await get_product(session_factory, backorder.id)).qty_on_hand == -1
    assert (await get_product(session_factory, untracked.id)).qty_on_hand == 0
    async with session_factory() as session:
        sales = (await session.execute(
            select(InventoryTransaction).where(InventoryTransaction.transaction_type == "sale")
        )).scalars().all()
        assert [(s.product_id, s.quantity, s.qty_before, s.qty_after, s.reference_id) for s in sales] == [
            (backorder.id, -1, 0, -1, result.new_order_id)
        ]


async def test_repeated_exchanges_never_exceed_purchased_quantity(db, session_factory, make_product, make_order):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 2, 50000)])

    for _ in range(2):
        async with session_factory() as session:
            await ExchangeService(session).process_exchange(build_request(order, items[0], replacement))

    with pytest.raises(ValidationError, match="only 0 remaining"):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    async with session_factory() as session:
        returned_qty = await session.scalar(
            select(func.sum(ReturnLineItem.quantity)).where(ReturnLineItem.original_order_item_id == items[0].id)
        )
        assert returned_qty == 2
        numbers = (await session.execute(select(ReturnRecord.return_number))).scalars().all()
        assert sorted(n[-5:] for n in numbers) == ["00001", "00002"]


# ---------------------------------------------------------------------------
# Dispositions
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("condition, disposition", [("defective", "rma_vendor"), ("other", "dispose")])
async def test_unsellable_returns_are_audited_not_restocked(
    db, session_factory, make_product, make_order, condition, disposition
):
    returned = await make_product(qty_on_hand=7)
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement, return_extra={"item_condition": condition})
    )

    assert (await get_product(session_factory, returned.id)).qty_on_hand == 7
    async with session_factory() as session:
        line = (await session.execute(select(ReturnLineItem))).scalar_one()
        assert line.disposition == disposition
        audit = (await session.execute(
            select(InventoryTransaction).where(InventoryTransaction.product_id == returned.id)
        )).scalar_one()
        assert audit.transaction_type == "damage"
        assert (audit.quantity, audit.qty_before, audit.qty_after) == (0, 7, 7)
        assert audit.reference_id == result.return_id
        assert audit.reason == f"Exchange {disposition}: {result.return_number}"


async def test_damaged_returns_go_to_clearance_stock(db, session_factory, make_product, make_order):
    returned = await make_product(qty_on_hand=1)
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    result = await ExchangeService(db).process_exchange(
        build_request(order, items[0], replacement, return_extra={"item_condition": "damaged"})
    )

    assert (await get_product(session_factory, returned.id)).qty_on_hand == 2
    async with session_factory() as session:
        restock = (await session.execute(
            select(InventoryTransaction).where(InventoryTransaction.product_id == returned.id)
        )).scalar_one()
        assert restock.transaction_type == "return"
        assert (restock.quantity, restock.qty_before, restock.qty_after) == (1, 1, 2)
        assert restock.reason == f"Exchange return: {result.return_number}"


async def test_failed_restore_is_tolerated(db, session_factory, make_product, make_order, monkeypatch, caplog):
    returned = await make_product(qty_on_hand=4)
    replacement = await make_product(qty_on_hand=5)
    order, items = await make_order([(returned, 1, 50000)])

    async def broken_restore(self, **kwargs):
        raise InternalError("inventory service unavailable")

    monkeypatch.setattr(InventoryService, "restore_inventory", broken_restore)

    result = await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    assert result.difference_cents == 0
    assert "Inventory restore failed" in caplog.text
    assert (await get_product(session_factory, returned.id)).qty_on_hand == 4
    assert (await get_product(session_factory, replacement.id)).qty_on_hand == 4
    async with session_factory() as session:
        record = await session.get(ReturnRecord, result.return_id)
        assert record.status == "completed"
        types = (await session.execute(select(InventoryTransaction.transaction_type))).scalars().all()
        assert types == ["sale"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_original_order_is_locked_for_update():
    sql = str(original_order_lock_query(uuid.uuid4()).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE OF orders" in sql


class FakeDriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


async def test_lock_timeout_surfaces_as_conflict(db, session_factory, make_product, make_order, monkeypatch):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    async def lock_timeout(self, *args, **kwargs):
        raise OperationalError(
            "UPDATE products SET qty_on_hand=...", {},
            FakeDriverError("canceling statement due to lock timeout", sqlstate="55P03"),
        )

    monkeypatch.setattr(ExchangeService, "_create_exchange_order", lock_timeout)

    with pytest.raises(ConflictError) as exc_info:
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    assert "UPDATE" not in exc_info.value.message
    await assert_nothing_written(session_factory, order)


async def test_original_order_is_the_only_row_locked(db, make_product, make_order, monkeypatch):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    locking_selects = []
    real_execute = AsyncSession.execute

    async def recording_execute(self, statement, *args, **kwargs):
        if isinstance(statement, Select):
            sql = str(statement.compile(dialect=postgresql.dialect()))
            if "FOR UPDATE" in sql:
                locking_selects.append(sql)
        return await real_execute(self, statement, *args, **kwargs)

    monkeypatch.setattr(AsyncSession, "execute", recording_execute)

    await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    assert len(locking_selects) == 1
    assert locking_selects[0].rstrip().endswith("FOR UPDATE OF orders")


async def test_concurrent_duplicate_insert_surfaces_as_conflict(
    db, session_factory, make_product, make_order, monkeypatch
):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    async def duplicate_key(self, *args, **kwargs):
        raise IntegrityError(
            "INSERT INTO store_credits ...", {},
            FakeDriverError("duplicate key value violates unique constraint", sqlstate="23505"),
        )

    monkeypatch.setattr(ExchangeService, "_create_exchange_order", duplicate_key)

    with pytest.raises(ConflictError):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    await assert_nothing_written(session_factory, order)


async def test_last_unit_sold_concurrently_is_not_oversold(db, session_factory, make_product, monkeypatch):
    product = await make_product("Last One", qty_on_hand=1)
    real_adjust = InventoryService._adjust_on_hand
    competing_sale_done = False

    async def adjust_after_competing_sale(self, product_id, delta, min_available=None):
        nonlocal competing_sale_done
        if not competing_sale_done:
            competing_sale_done = True
            async with session_factory() as other:
                await InventoryService(other).deduct_for_sale(product, 1, uuid.uuid4(), "EXC-20261016-00001")
                await other.commit()
        return await real_adjust(self, product_id, delta, min_available)

    monkeypatch.setattr(InventoryService, "_adjust_on_hand", adjust_after_competing_sale)

    with pytest.raises(ValidationError, match="0 available, 1 requested"):
        await InventoryService(db).deduct_for_sale(product, 1, uuid.uuid4(), "EXC-20261016-00002")
    await db.rollback()

    assert (await get_product(session_factory, product.id)).qty_on_hand == 0
    async with session_factory() as session:
        sales = (await session.execute(select(InventoryTransaction.reference_number))).scalars().all()
        assert sales == ["EXC-20261016-00001"]


async def test_other_database_errors_surface_as_internal(db, session_factory, make_product, make_order, monkeypatch):
    returned = await make_product()
    replacement = await make_product()
    order, items = await make_order([(returned, 1, 50000)])

    async def disk_full(self, *args, **kwargs):
        raise OperationalError("INSERT INTO orders ...", {}, FakeDriverError("disk full", sqlstate="53100"))

    monkeypatch.setattr(ExchangeService, "_create_exchange_order", disk_full)

    with pytest.raises(InternalError) as exc_info:
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    assert "INSERT" not in exc_info.value.message
    await assert_nothing_written(session_factory, order)


async def test_store_credit_code_exhaustion_fails_the_exchange(
    db, session_factory, make_product, make_order, monkeypatch
):
    returned = await make_product(price="800.00")
    replacement = await make_product(price="300.00")
    order, items = await make_order([(returned, 1, 80000)], tax_exempt=True)

    async with session_factory() as session:
        session.add(StoreCredit(code="SC-AAAAA", original_amount_cents=100, current_balance_cents=100))
        await session.commit()

    monkeypatch.setattr(store_credit_service, "generate_store_credit_code", lambda: "SC-AAAAA")

    with pytest.raises(ConflictError, match="store credit code"):
        await ExchangeService(db).process_exchange(build_request(order, items[0], replacement))

    async with session_factory() as session:
        assert await count(session, ReturnRecord) == 0
        assert await count(session, Order, Order.is_exchange.is_(True)) == 0
        assert await count(session, StoreCredit) == 1


# ---------------------------------------------------------------------------
# Preview and read
# ---------------------------------------------------------------------------

async def test_calculate_writes_nothing(db, session_factory, make_product, make_order):
    returned = await make_product(price="300.00")
    replacement = await make_product(price="800.00")
    order, items = await make_order([(returned, 1, 30000)], tax_jurisdiction="BC")

    preview = await ExchangeService(db).calculate_exchange(ExchangeCalculateRequest(
        original_order_id=order.id,
        return_items=[{"order_item_id": items[0].id, "quantity": 1}],
        new_items=[{"product_id": replacement.id, "quantity": 1}],
    ))
    await db.rollback()

    assert preview.tax_jurisdiction == "BC"
    assert preview.return_value.total_cents == 33600
    assert preview.new_order_value.total_cents == 89600
    assert preview.difference_cents == 56000
    assert preview.settlement_type == "customer_pays"
    await assert_nothing_written(session_factory, order)


async def test_get_exchange_returns_stored_detail(db, session_factory, make_product, make_order, make_reason_code):
    returned = await make_product("Kettle")
    replacement = await make_product("Coffee Maker")
    order, items = await make_order([(returned, 1, 50000)])
    reason = await make_reason_code("WRONG_COLOUR")

    result = await ExchangeService(db).process_exchange(build_request(
        order, items[0], replacement,
        return_extra={"reason_code_id": reason.id, "reason_notes": "Wanted red"},
    ))

    async with session_factory() as session:
        detail = await ExchangeService(session).get_exchange(result.return_id)

    assert detail["return_number"] == result.return_number
    assert detail["status"] == "completed"
    assert detail["original_order"].id == order.id
    assert detail["exchange_order"].id == result.new_order_id
    assert detail["customer"]["email"] == "jane@example.com"
    assert detail["difference_cents"] == 0
    [line] = detail["return_items"]
    assert line["product_name"] == "Kettle"
    assert line["reason"] == "Wrong Colour"
    assert line["reason_notes"] == "Wanted red"
    [new_item] = detail["new_items"]
    assert new_item.product_name == "Coffee Maker"


async def test_get_exchange_not_found(db):
    with pytest.raises(NotFoundError):
        await ExchangeService(db).get_exchange(uuid.uuid4())
