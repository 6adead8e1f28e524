"""
Customer credit accounts.

WHY: Credit sales ("fiado") let trusted customers take goods now and pay
later, up to a per-customer limit.

DESIGN PRINCIPLES:
- CreditMovement rows are append-only (CHARGE positive, PAYMENT negative)
- Customer.outstanding_cents caches the fold and is written in the same
  transaction as the movement
- A charge may never push outstanding above the credit limit
- A payment may never exceed what is owed
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import CreditLimitExceeded, NotFound, ValidationError
from ..models import CashMovementKind, CreditMovement, CreditMovementKind, Customer, PaymentMethod
from .audit_service import ClientMeta
from .concurrency import begin_immediate, run_with_retry


@dataclass(frozen=True)
class CreditDiscrepancy:
    customer_id: str
    materialized: int
    folded: int


class CreditLedger:
    def __init__(self, store, *, cash_ledger=None, audit=None, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.cash_ledger = cash_ledger
        self.audit = audit
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def _customer(self, customer_id: str) -> Customer:
        customer = self.store.get_customer(customer_id)
        if customer is None:
            raise NotFound("Customer", customer_id)
        return customer

    def outstanding(self, customer_id: str) -> int:
        return self._customer(customer_id).outstanding_cents

    def available_credit(self, customer_id: str) -> int:
        return self._customer(customer_id).available_credit_cents()

    def movements(self, customer_id: str) -> list[CreditMovement]:
        return self.store.movements_for(customer_id)

    def verify(self) -> list[CreditDiscrepancy]:
        return [
            CreditDiscrepancy(customer.id, customer.outstanding_cents, folded)
            for customer, folded in self.store.folded_balances()
            if customer.outstanding_cents != folded
        ]

    def lock_customer(self, customer_id: str) -> Customer:
        customer = self.store.lock_customer(customer_id)
        if customer is None:
            raise NotFound("Customer", customer_id)
        return customer

    def check_charge(self, customer: Customer, amount_cents: int) -> None:
        """Limit is strict: a limit of 0 means no credit at all."""
        if not customer.is_active:
            raise ValidationError(f"Customer {customer.id} is inactive")
        if customer.outstanding_cents + amount_cents > customer.credit_limit_cents:
            raise CreditLimitExceeded(customer.id, amount_cents, customer.available_credit_cents())

    def charge(
        self,
        customer: Customer,
        amount_cents: int,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        user_id: str | None = None,
    ) -> CreditMovement:
        """Append a CHARGE. Caller holds the customer lock and owns the transaction."""
        if amount_cents <= 0:
            raise ValidationError("Charge amount must be positive")
        self.check_charge(customer, amount_cents)
        return self._append(
            customer, amount_cents, CreditMovementKind.CHARGE,
            payment_method=PaymentMethod.CREDIT,
            reference_type=reference_type, reference_id=reference_id, user_id=user_id,
        )

    def release(
        self,
        customer: Customer,
        amount_cents: int,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        user_id: str | None = None,
        note: str | None = None,
    ) -> CreditMovement:
        """Reduce debt without money changing hands (reversal of a credit sale)."""
        if amount_cents <= 0 or amount_cents > customer.outstanding_cents:
            raise ValidationError(
                "Release amount must be positive and not exceed the outstanding balance",
                details={"customer_id": customer.id, "outstanding_cents": customer.outstanding_cents},
            )
        return self._append(
            customer, -amount_cents, CreditMovementKind.PAYMENT,
            reference_type=reference_type, reference_id=reference_id, user_id=user_id, note=note,
        )

    def pay(
        self,
        customer_id: str,
        amount_cents: int,
        *,
        method: str = PaymentMethod.CASH,
        register_id: str | None = None,
        user_id: str | None = None,
        note: str | None = None,
    ) -> CreditMovement:
        """
        Customer pays down their debt.

        A CASH payment taken at a register also lands in that register's
        open session as a CREDIT_PAYMENT cash movement, in the same
        transaction.

        Raises:
            NotFound: unknown customer or register
            ValidationError: non-positive amount or amount above outstanding
            RegisterClosed: register given but it has no open session
        """
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("Payment amount must be a positive integer")
        if method not in PaymentMethod.ALL or method in (PaymentMethod.CREDIT, PaymentMethod.MIXED):
            raise ValidationError(f"Unsupported payment method {method!r} for a credit payment")

        def _op():
            begin_immediate(self.session)
            customer = self.lock_customer(customer_id)
            if amount_cents > customer.outstanding_cents:
                raise ValidationError(
                    "Payment exceeds outstanding balance",
                    details={
                        "customer_id": customer.id,
                        "amount_cents": amount_cents,
                        "outstanding_cents": customer.outstanding_cents,
                    },
                )
            movement = self._append(
                customer, -amount_cents, CreditMovementKind.PAYMENT,
                payment_method=method, user_id=user_id, note=note,
            )
            if register_id and method == PaymentMethod.CASH and self.cash_ledger is not None:
                reg_session = self.cash_ledger.lock_open_session(register_id)
                self.cash_ledger.append(
                    reg_session, CashMovementKind.CREDIT_PAYMENT, amount_cents,
                    reference_type="CreditMovement", reference_id=movement.id,
                    user_id=user_id,
                )
            if self.audit is not None:
                self.audit.record("Customer", customer.id, "credit.payment_received",
                                  new_values=movement.to_dict(), meta=ClientMeta(user_id=user_id))
            self.session.commit()
            return movement

        return run_with_retry(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )

    def _append(self, customer: Customer, amount_cents: int, kind: str, **fields) -> CreditMovement:
        customer.outstanding_cents = customer.outstanding_cents + amount_cents
        customer.touch()
        movement = CreditMovement(
            customer_id=customer.id,
            kind=kind,
            amount_cents=amount_cents,
            balance_after_cents=customer.outstanding_cents,
            payment_method=fields.get("payment_method"),
            reference_type=fields.get("reference_type"),
            reference_id=fields.get("reference_id"),
            note=fields.get("note"),
            created_by_user_id=fields.get("user_id"),
        )
        self.store.add(movement)
        return movement
