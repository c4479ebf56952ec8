"""
Exchange Service

Processes an exchange as one all-or-nothing unit of work:

    1. lock the original order (SELECT ... FOR UPDATE OF orders)
    2. value the returned items and the new items
    3. tax both legs with the original order's jurisdiction
    4. write the return record, its lines and their inventory dispositions
    5. write the exchange order, its lines and the stock deductions
    6. settle the difference
    7. finalize the return and commit

Any failure rolls the whole transaction back.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from exchange_engine.config import settings
from exchange_engine.core.exceptions import (
    ExchangeError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    translate_db_error,
)
from exchange_engine.models.order import Order, OrderItem, OrderSource, OrderStatus
from exchange_engine.models.returns import ReturnLineItem, ReturnRecord, ReturnStatus, ReturnType
from exchange_engine.services.disposition_gateway import DispositionGateway
from exchange_engine.services.document_sequence_service import (
    DocumentSequenceService,
    EXCHANGE_ORDER_PREFIX,
)
from exchange_engine.services.new_item_valuator import NewItemValuation, NewItemValuator
from exchange_engine.services.return_valuator import ReturnValuation, ReturnValuator
from exchange_engine.services.settlement_resolver import (
    DEFAULT_REFUND_METHOD,
    SettlementResolver,
    settlement_type_for,
    validate_settlement_methods,
)
from exchange_engine.services.tax_rates import (
    TaxBreakdown,
    compute_tax_breakdown,
    compute_tax_cents,
    resolve_jurisdiction,
)

logger = logging.getLogger(__name__)


def original_order_lock_query(order_id: uuid.UUID):
    """Exclusive row lock on the original order only (not on joined rows)."""
    return (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update(of=Order)
    )


def _payment_details(request) -> Optional[dict[str, Any]]:
    details = getattr(request, "payment_details", None)
    if details is None:
        return None
    return details.model_dump(exclude_none=True)


@dataclass
class LegValue:
    subtotal_cents: int
    tax_cents: int

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents


@dataclass
class ItemLine:
    product: str
    quantity: int
    value_cents: int


@dataclass
class ExchangeQuote:
    """Valuation of both legs, shared by processing and preview."""
    order: Order
    returns: ReturnValuation
    new_items: NewItemValuation
    return_value: LegValue
    new_order_value: LegValue
    new_order_tax: TaxBreakdown

    @property
    def difference_cents(self) -> int:
        return self.new_order_value.total_cents - self.return_value.total_cents

    @property
    def items_returned(self) -> list[ItemLine]:
        return [
            ItemLine(line.order_item.product_name, line.quantity, line.refund_amount_cents)
            for line in self.returns.lines
        ]

    @property
    def items_new(self) -> list[ItemLine]:
        return [
            ItemLine(line.product.name, line.quantity, line.line_total_cents)
            for line in self.new_items.lines
        ]


@dataclass
class ExchangeResult:
    return_id: uuid.UUID
    return_number: str
    new_order_id: uuid.UUID
    new_order_number: str
    return_value: LegValue
    new_order_value: LegValue
    difference_cents: int
    payment: dict[str, Any]
    items_returned: list[ItemLine] = field(default_factory=list)
    items_new: list[ItemLine] = field(default_factory=list)


@dataclass
class ExchangePreview:
    original_order_id: uuid.UUID
    original_order_number: str
    tax_jurisdiction: str
    return_value: LegValue
    new_order_value: LegValue
    difference_cents: int
    settlement_type: str
    items_returned: list[ItemLine] = field(default_factory=list)
    items_new: list[ItemLine] = field(default_factory=list)


class ExchangeService:
    """Service for processing, previewing and reading exchanges."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.sequences = DocumentSequenceService(db)
        self.gateway = DispositionGateway(db)
        self.resolver = SettlementResolver(db)

    # ==================== PROCESS ====================

    async def process_exchange(self, request, user_id: Optional[uuid.UUID] = None) -> ExchangeResult:
        """
        Process an exchange and commit it.

        Args:
            request: ExchangeRequest (original_order_id, return_items,
                new_items, payment_method, refund_method, notes)
            user_id: Initiating user

        Returns:
            ExchangeResult

        Raises:
            ValidationError, NotFoundError, InvalidStateError, ConflictError,
            InternalError. Nothing is persisted when any of these is raised.
        """
        self._validate_envelope(request)
        validate_settlement_methods(request.payment_method, request.refund_method)

        logger.info(
            f"Processing exchange on order {request.original_order_id}: "
            f"{len(request.return_items)} return line(s), {len(request.new_items)} new line(s)"
        )

        try:
            result = await self._process(request, user_id)
            await self.db.commit()
        except ExchangeError as e:
            await self.db.rollback()
            logger.warning(f"Exchange on order {request.original_order_id} rejected: {e.message}")
            raise
        except DBAPIError as e:
            await self.db.rollback()
            error = translate_db_error(e)
            logger.error(
                f"Database error processing exchange on order {request.original_order_id}: "
                f"{error.code} ({type(e.orig).__name__ if e.orig is not None else type(e).__name__})"
            )
            raise error from e
        except Exception:
            await self.db.rollback()
            logger.exception(f"Unexpected error processing exchange on order {request.original_order_id}")
            raise

        logger.info(
            f"Exchange completed: return {result.return_number}, new order {result.new_order_number}, "
            f"difference {result.difference_cents} cents, settlement {result.payment['type']}"
        )
        return result

    async def _process(self, request, user_id: Optional[uuid.UUID]) -> ExchangeResult:
        order = await self._load_original_order(request.original_order_id, lock=True)
        quote = await self._quote(order, request.return_items, request.new_items)
        difference_cents = quote.difference_cents

        # ---- Return record ----
        return_number = await self.sequences.generate_return_number()
        refund_method = None
        if difference_cents < 0:
            refund_method = request.refund_method or DEFAULT_REFUND_METHOD

        return_record = ReturnRecord(
            return_number=return_number,
            original_order_id=order.id,
            customer_id=order.customer_id,
            return_type=ReturnType.EXCHANGE.value,
            status=ReturnStatus.PROCESSING.value,
            subtotal_cents=quote.return_value.subtotal_cents,
            tax_cents=quote.return_value.tax_cents,
            total_cents=quote.return_value.total_cents,
            refund_method=refund_method,
            notes=request.notes or f"Exchange on order {order.order_number}",
            initiated_by=user_id,
        )
        self.db.add(return_record)
        await self.db.flush()

        for line in quote.returns.lines:
            self.db.add(ReturnLineItem(
                return_id=return_record.id,
                original_order_item_id=line.order_item.id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                refund_amount_cents=line.refund_amount_cents,
                reason_code_id=line.reason_code_id,
                reason_notes=line.reason_notes,
                item_condition=line.item_condition,
                disposition=line.disposition.value,
            ))
            await self.db.flush()
            await self.gateway.process_return_line(line, return_record, user_id)

        # ---- Exchange order ----
        new_order = await self._create_exchange_order(order, quote, return_record, user_id)

        # ---- Settlement ----
        outcome = await self.resolver.settle(
            difference_cents=difference_cents,
            return_total_cents=quote.return_value.total_cents,
            original_order=order,
            new_order=new_order,
            return_record=return_record,
            payment_method=request.payment_method,
            refund_method=request.refund_method,
            user_id=user_id,
            payment_details=_payment_details(request),
        )

        # ---- Finalize ----
        return_record.status = ReturnStatus.COMPLETED.value
        return_record.completed_at = datetime.now(timezone.utc)
        return_record.exchange_order_id = new_order.id
        await self.db.flush()

        payment = {
            "type": outcome.type.value,
            "method": outcome.method,
            "amount_cents": outcome.amount_cents,
            "store_credit_code": outcome.store_credit_code,
        }
        return ExchangeResult(
            return_id=return_record.id,
            return_number=return_number,
            new_order_id=new_order.id,
            new_order_number=new_order.order_number,
            return_value=quote.return_value,
            new_order_value=quote.new_order_value,
            difference_cents=difference_cents,
            payment=payment,
            items_returned=quote.items_returned,
            items_new=quote.items_new,
        )

    async def _create_exchange_order(
        self,
        order: Order,
        quote: ExchangeQuote,
        return_record: ReturnRecord,
        user_id: Optional[uuid.UUID],
    ) -> Order:
        order_number = await self.sequences.generate_order_number(EXCHANGE_ORDER_PREFIX)
        tax = quote.new_order_tax
        # NO_TAX when the customer is exempt
        rates = tax.rates

        new_order = Order(
            order_number=order_number,
            source=OrderSource.EXCHANGE.value,
            status=OrderStatus.ORDER_PROCESSING.value,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            tax_jurisdiction=tax.jurisdiction,
            tax_exempt=order.tax_exempt,
            tax_exempt_number=order.tax_exempt_number,
            fulfillment_type=order.fulfillment_type or "pickup",
            subtotal_cents=quote.new_order_value.subtotal_cents,
            tax_cents=quote.new_order_value.tax_cents,
            hst_rate=rates.hst,
            gst_rate=rates.gst,
            pst_rate=rates.pst,
            hst_cents=tax.hst_cents,
            gst_cents=tax.gst_cents,
            pst_cents=tax.pst_cents,
            total_cents=quote.new_order_value.total_cents,
            amount_paid_cents=0,
            is_exchange=True,
            original_return_id=return_record.id,
            order_metadata={
                "exchange": True,
                "original_order_id": str(order.id),
                "return_id": str(return_record.id),
            },
            internal_notes=f"Exchange from order {order.order_number} (return {return_record.return_number})",
            created_by=user_id,
        )
        self.db.add(new_order)
        await self.db.flush()

        for sort_order, line in enumerate(quote.new_items.lines, start=1):
            self.db.add(OrderItem(
                order_id=new_order.id,
                product_id=line.product.id,
                product_name=line.product.name,
                product_sku=line.product.sku,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                unit_cost_cents=line.unit_cost_cents,
                line_total_cents=line.line_total_cents,
                taxable=line.taxable,
                sort_order=sort_order,
            ))
            await self.db.flush()
            await self.gateway.process_sale_line(line, new_order.id, order_number, user_id)

        return new_order

    # ==================== PREVIEW ====================

    async def calculate_exchange(self, request) -> ExchangePreview:
        """Value an exchange without locking or writing anything."""
        self._validate_envelope(request)
        order = await self._load_original_order(request.original_order_id, lock=False)
        quote = await self._quote(order, request.return_items, request.new_items)

        return ExchangePreview(
            original_order_id=order.id,
            original_order_number=order.order_number,
            tax_jurisdiction=quote.new_order_tax.jurisdiction,
            return_value=quote.return_value,
            new_order_value=quote.new_order_value,
            difference_cents=quote.difference_cents,
            settlement_type=settlement_type_for(quote.difference_cents).value,
            items_returned=quote.items_returned,
            items_new=quote.items_new,
        )

    # ==================== READ ====================

    async def get_exchange(self, return_id: uuid.UUID) -> dict[str, Any]:
        """Load a stored exchange by its return record id."""
        result = await self.db.execute(
            select(ReturnRecord)
            .options(
                selectinload(ReturnRecord.items).selectinload(ReturnLineItem.reason_code),
                selectinload(ReturnRecord.items).selectinload(ReturnLineItem.order_item),
                selectinload(ReturnRecord.original_order),
                selectinload(ReturnRecord.exchange_order).selectinload(Order.items),
            )
            .where(
                ReturnRecord.id == return_id,
                ReturnRecord.return_type == ReturnType.EXCHANGE.value,
            )
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Exchange not found")

        original = record.original_order
        exchange_order = record.exchange_order

        return {
            "id": record.id,
            "return_number": record.return_number,
            "status": record.status,
            "refund_method": record.refund_method,
            "notes": record.notes,
            "original_order": original,
            "exchange_order": exchange_order,
            "customer": {
                "id": original.customer_id,
                "name": original.customer_name,
                "email": original.customer_email,
            },
            "return_value_cents": record.total_cents,
            "return_items": [
                {
                    "id": item.id,
                    "original_order_item_id": item.original_order_item_id,
                    "product_id": item.product_id,
                    "product_name": item.order_item.product_name if item.order_item else None,
                    "quantity": item.quantity,
                    "unit_price_cents": item.unit_price_cents,
                    "refund_amount_cents": item.refund_amount_cents,
                    "reason": item.reason_code.description if item.reason_code else None,
                    "reason_notes": item.reason_notes,
                    "item_condition": item.item_condition,
                    "disposition": item.disposition,
                }
                for item in record.items
            ],
            "new_items": list(exchange_order.items) if exchange_order else [],
            "difference_cents": (exchange_order.total_cents if exchange_order else 0) - record.total_cents,
            "created_at": record.created_at,
            "completed_at": record.completed_at,
        }

    # ==================== HELPERS ====================

    @staticmethod
    def _validate_envelope(request) -> None:
        if not request.original_order_id:
            raise ValidationError("original_order_id is required")
        if not request.return_items:
            raise ValidationError("return_items are required")
        if not request.new_items:
            raise ValidationError("new_items are required")

    async def _load_original_order(self, order_id: uuid.UUID, lock: bool) -> Order:
        query = original_order_lock_query(order_id) if lock else select(Order).where(Order.id == order_id)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()

        if order is None:
            raise NotFoundError("Original order not found")
        if order.status not in settings.EXCHANGE_ELIGIBLE_STATUSES:
            raise InvalidStateError(f"Cannot exchange: order status is '{order.status}'")
        return order

    async def _quote(self, order: Order, return_items, new_items) -> ExchangeQuote:
        returns = await ReturnValuator(self.db).valuate(order, return_items)
        new = await NewItemValuator(self.db).valuate(new_items)

        jurisdiction = resolve_jurisdiction(order.tax_jurisdiction)
        # once per leg, on the taxable lines only
        return_tax = compute_tax_cents(returns.taxable_subtotal_cents, jurisdiction, order.tax_exempt)
        new_order_tax = compute_tax_breakdown(new.taxable_subtotal_cents, jurisdiction, order.tax_exempt)

        return ExchangeQuote(
            order=order,
            returns=returns,
            new_items=new,
            return_value=LegValue(returns.subtotal_cents, return_tax),
            new_order_value=LegValue(new.subtotal_cents, new_order_tax.total_cents),
            new_order_tax=new_order_tax,
        )
