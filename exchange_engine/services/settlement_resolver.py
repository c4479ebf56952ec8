"""
Settlement Resolver

Settles the signed price difference of an exchange:

    difference > 0   customer pays the difference on the new order
    difference < 0   customer is refunded (store credit, cash, original payment)
    difference == 0  even exchange

Every branch leaves the new order paid in full.
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.core.exceptions import ValidationError
from exchange_engine.models.order import (
    Order,
    OrderPayment,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from exchange_engine.models.returns import ReturnRecord
from exchange_engine.services.store_credit_service import StoreCreditService

logger = logging.getLogger(__name__)


class SettlementType(str, Enum):
    CUSTOMER_PAYS = "customer_pays"
    CUSTOMER_REFUND = "customer_refund"
    EVEN_EXCHANGE = "even_exchange"


class RefundMethod(str, Enum):
    STORE_CREDIT = "store_credit"
    CASH = "cash"
    ORIGINAL_PAYMENT = "original_payment"


DIFFERENCE_PAYMENT_METHODS = (
    PaymentMethod.CASH.value,
    PaymentMethod.CREDIT_CARD.value,
    PaymentMethod.DEBIT_CARD.value,
)
REFUND_METHODS = tuple(m.value for m in RefundMethod)

DEFAULT_PAYMENT_METHOD = PaymentMethod.CASH.value
DEFAULT_REFUND_METHOD = RefundMethod.STORE_CREDIT.value


@dataclass
class SettlementOutcome:
    type: SettlementType
    amount_cents: int = 0
    method: Optional[str] = None
    store_credit_code: Optional[str] = None


def settlement_type_for(difference_cents: int) -> SettlementType:
    if difference_cents > 0:
        return SettlementType.CUSTOMER_PAYS
    if difference_cents < 0:
        return SettlementType.CUSTOMER_REFUND
    return SettlementType.EVEN_EXCHANGE


def validate_settlement_methods(payment_method: Optional[str], refund_method: Optional[str]) -> None:
    """Reject unknown methods before anything is written."""
    if payment_method is not None and payment_method not in DIFFERENCE_PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment_method '{payment_method}'. "
            f"Allowed: {', '.join(DIFFERENCE_PAYMENT_METHODS)}"
        )
    if refund_method is not None and refund_method not in REFUND_METHODS:
        raise ValidationError(
            f"Invalid refund_method '{refund_method}'. Allowed: {', '.join(REFUND_METHODS)}"
        )


class SettlementResolver:

    def __init__(self, db: AsyncSession, store_credits: Optional[StoreCreditService] = None):
        self.db = db
        self.store_credits = store_credits or StoreCreditService(db)

    async def settle(
        self,
        difference_cents: int,
        return_total_cents: int,
        original_order: Order,
        new_order: Order,
        return_record: ReturnRecord,
        payment_method: Optional[str] = None,
        refund_method: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        payment_details: Optional[dict[str, Any]] = None,
    ) -> SettlementOutcome:
        """
        Record the payments that settle an exchange.

        ``payment_details`` (card last four, brand, authorization code,
        processor reference, cash tendered, change given) is stored on the
        difference payment and ignored by the other branches.
        """
        validate_settlement_methods(payment_method, refund_method)
        settlement_type = settlement_type_for(difference_cents)
        return_number = return_record.return_number

        if settlement_type == SettlementType.CUSTOMER_PAYS:
            method = payment_method or DEFAULT_PAYMENT_METHOD
            self._add_payment(
                new_order, method, difference_cents, user_id,
                notes=f"Difference payment for exchange {return_number}",
                details=payment_details,
            )
            self._add_payment(
                new_order, PaymentMethod.EXCHANGE_CREDIT.value, return_total_cents, user_id,
                notes=f"Exchange credit from return {return_number}",
            )
            self._mark_paid(new_order)
            outcome = SettlementOutcome(settlement_type, difference_cents, method)

        elif settlement_type == SettlementType.CUSTOMER_REFUND:
            refund_cents = abs(difference_cents)
            method = refund_method or DEFAULT_REFUND_METHOD

            self._add_payment(
                new_order, PaymentMethod.EXCHANGE_CREDIT.value, new_order.total_cents, user_id,
                notes=f"Exchange credit from return {return_number}",
            )
            self._mark_paid(new_order)

            if method == RefundMethod.STORE_CREDIT.value:
                credit = await self.store_credits.issue(
                    amount_cents=refund_cents,
                    customer_id=original_order.customer_id,
                    source_return_id=return_record.id,
                    return_number=return_number,
                    issued_by=user_id,
                )
                outcome = SettlementOutcome(settlement_type, refund_cents, method, credit.code)
            else:
                if method == RefundMethod.CASH.value:
                    notes = f"Cash refund for exchange {return_number}"
                else:
                    notes = f"Refund to original payment for exchange {return_number}"
                self._add_payment(
                    original_order, method, -refund_cents, user_id,
                    notes=notes,
                    is_refund=True,
                    refund_reason="Exchange difference refund",
                )
                outcome = SettlementOutcome(settlement_type, refund_cents, method)

        else:
            self._add_payment(
                new_order, PaymentMethod.EXCHANGE_CREDIT.value, new_order.total_cents, user_id,
                notes=f"Even exchange from return {return_number}",
            )
            self._mark_paid(new_order)
            outcome = SettlementOutcome(settlement_type)

        await self.db.flush()
        logger.info(
            f"Settled exchange {return_number}: {outcome.type.value} "
            f"{outcome.method or ''} {outcome.amount_cents}".rstrip()
        )
        return outcome

    def _add_payment(
        self,
        order: Order,
        method: str,
        amount_cents: int,
        user_id: Optional[uuid.UUID],
        notes: str,
        is_refund: bool = False,
        refund_reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> OrderPayment:
        payment = OrderPayment(
            order_id=order.id,
            payment_method=method,
            amount_cents=amount_cents,
            status=PaymentStatus.COMPLETED.value,
            is_refund=is_refund,
            refund_reason=refund_reason,
            processed_by=user_id,
            notes=notes,
            **(details or {}),
        )
        self.db.add(payment)
        return payment

    @staticmethod
    def _mark_paid(order: Order) -> None:
        order.amount_paid_cents = order.total_cents
        order.status = OrderStatus.PAID.value
