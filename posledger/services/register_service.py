"""
Register and cash session ledger.

WHY: Track POS terminals, cashier sessions, and cash accountability.
Every amount that enters or leaves the drawer is a CashMovement.

DESIGN PRINCIPLES:
- One OPEN session per register at a time
- Sessions are immutable once closed
- Opening cash is recorded as an INITIAL_CASH movement, so the running
  balance is always the plain fold of the session's movements
- Variance tracking (expected vs counted cash) at close
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from ..errors import NotFound, RegisterAlreadyOpen, RegisterClosed, ValidationError
from ..models import CashMovement, CashMovementKind, Register, RegisterSession, SessionStatus
from ..time_utils import utcnow
from .audit_service import ClientMeta
from .concurrency import begin_immediate, run_with_retry

# Kinds a cashier may record by hand; SALE / INITIAL_CASH / CREDIT_PAYMENT
# are written by the operations that own them.
MANUAL_KINDS = (CashMovementKind.WITHDRAWAL, CashMovementKind.DEPOSIT, CashMovementKind.EXPENSE)


@dataclass(frozen=True)
class ClosingSummary:
    session_id: str
    register_id: str
    opening_balance_cents: int
    closing_balance_cents: int
    counted_cash_cents: int | None
    variance_cents: int | None
    totals_by_kind: dict[str, int] = field(default_factory=dict)
    movement_count: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "register_id": self.register_id,
            "opening_balance_cents": self.opening_balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "counted_cash_cents": self.counted_cash_cents,
            "variance_cents": self.variance_cents,
            "totals_by_kind": dict(self.totals_by_kind),
            "movement_count": self.movement_count,
        }


@dataclass(frozen=True)
class CashDiscrepancy:
    session_id: str
    materialized: int
    folded: int


class CashRegisterLedger:
    def __init__(self, store, *, audit=None, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.audit = audit
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    # =========================================================================
    # REGISTER MANAGEMENT
    # =========================================================================

    def create_register(self, code: str, name: str, location: str | None = None) -> Register:
        """
        Create a new POS register.

        WHY: Registers must exist before sessions can be opened.
        """
        code = (code or "").strip()
        if not code or not (name or "").strip():
            raise ValidationError("Register code and name are required")

        def _op():
            try:
                register = self.store.add(Register(code=code, name=name.strip(), location=location))
            except IntegrityError as exc:
                raise ValidationError(f"Register '{code}' already exists") from exc
            self.session.commit()
            return register

        return self._retrying(_op)

    def get_register(self, register_id: str) -> Register:
        register = self.store.get_register(register_id)
        if register is None:
            raise NotFound("Register", register_id)
        return register

    def registers(self, include_inactive: bool = False) -> list[Register]:
        return self.store.all_registers(include_inactive=include_inactive)

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    def open(self, register_id: str, opening_balance_cents: int, *, user_id: str | None = None,
             notes: str | None = None) -> RegisterSession:
        """
        Open a cash session on a register.

        Raises:
            NotFound: unknown register
            ValidationError: inactive register or negative opening balance
            RegisterAlreadyOpen: the register already has an OPEN session
        """
        if not isinstance(opening_balance_cents, int) or opening_balance_cents < 0:
            raise ValidationError("Opening balance must be a non-negative integer")

        def _op():
            begin_immediate(self.session)
            register = self.store.lock_register(register_id)
            if register is None:
                raise NotFound("Register", register_id)
            if not register.is_active:
                raise ValidationError(f"Register {register.code} is inactive")

            existing = self.store.open_session_for(register_id)
            if existing is not None:
                raise RegisterAlreadyOpen(register_id, existing.id)

            now = utcnow()
            reg_session = RegisterSession(
                register_id=register_id,
                open_register_id=register_id,
                status=SessionStatus.OPEN,
                opening_balance_cents=opening_balance_cents,
                balance_cents=0,
                opened_at=now,
                opened_by_user_id=user_id,
                notes=notes,
            )
            try:
                self.store.add(reg_session)
            except IntegrityError as exc:
                # Another opener won between our check and our insert.
                raise RegisterAlreadyOpen(register_id) from exc

            if opening_balance_cents > 0:
                self.append(reg_session, CashMovementKind.INITIAL_CASH, opening_balance_cents,
                            user_id=user_id, note="Opening cash")
            self._audit(reg_session.id, "register.opened", user_id, new_values=reg_session.to_dict())
            self.session.commit()
            return reg_session

        reg_session = self._retrying(_op)
        if has_app_context():
            current_app.logger.info("Opened session %s on register %s", reg_session.id, register_id)
        return reg_session

    def close(self, session_id: str, counted_cash_cents: int | None = None, *,
              user_id: str | None = None, notes: str | None = None) -> ClosingSummary:
        """
        Close an OPEN session and freeze its balance.

        closing balance = opening + SUM(non-opening movements), which is the
        fold of every movement including INITIAL_CASH.
        """
        if counted_cash_cents is not None and (
            not isinstance(counted_cash_cents, int) or counted_cash_cents < 0
        ):
            raise ValidationError("Counted cash must be a non-negative integer")

        def _op():
            begin_immediate(self.session)
            reg_session = self._lock_session(session_id)
            if not reg_session.is_open:
                raise RegisterClosed(
                    f"Session {session_id} is already closed",
                    details={"session_id": session_id},
                )

            totals = self.store.totals_by_kind(session_id)
            closing = reg_session.balance_cents
            reg_session.status = SessionStatus.CLOSED
            reg_session.open_register_id = None
            reg_session.closing_balance_cents = closing
            reg_session.closed_at = utcnow()
            reg_session.closed_by_user_id = user_id
            if notes:
                reg_session.notes = notes
            if counted_cash_cents is not None:
                reg_session.counted_cash_cents = counted_cash_cents
                reg_session.variance_cents = counted_cash_cents - closing
            reg_session.touch()
            self.session.flush()

            summary = ClosingSummary(
                session_id=reg_session.id,
                register_id=reg_session.register_id,
                opening_balance_cents=reg_session.opening_balance_cents,
                closing_balance_cents=closing,
                counted_cash_cents=reg_session.counted_cash_cents,
                variance_cents=reg_session.variance_cents,
                totals_by_kind=totals,
                movement_count=len(self.store.movements_for(session_id)),
            )
            self._audit(reg_session.id, "register.closed", user_id, new_values=summary.to_dict())
            self.session.commit()
            return summary

        return self._retrying(_op)

    def get_open_session(self, register_id: str) -> RegisterSession | None:
        return self.store.open_session_for(register_id)

    def get_session(self, session_id: str) -> RegisterSession:
        reg_session = self.store.get_session(session_id)
        if reg_session is None:
            raise NotFound("RegisterSession", session_id)
        return reg_session

    def balance(self, session_id: str) -> int:
        return self.get_session(session_id).balance_cents

    def movements(self, session_id: str) -> list[CashMovement]:
        return self.store.movements_for(session_id)

    # =========================================================================
    # CASH MOVEMENTS
    # =========================================================================

    def record_movement(self, session_id: str, kind: str, amount_cents: int, *,
                        user_id: str | None = None, note: str | None = None) -> CashMovement:
        """
        Withdrawal, deposit or expense recorded by the cashier.

        Raises:
            ValidationError: unsupported kind, non-positive amount, or not
                enough cash in the drawer for a withdrawal/expense
            RegisterClosed: the session is not OPEN
        """
        if kind not in MANUAL_KINDS:
            raise ValidationError(f"Cash movement kind {kind!r} cannot be recorded manually")
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("Amount must be a positive integer")

        def _op():
            begin_immediate(self.session)
            reg_session = self._lock_session(session_id)
            movement = self.append(reg_session, kind, amount_cents, user_id=user_id, note=note)
            self._audit(reg_session.id, f"cash.{kind.lower()}", user_id, new_values=movement.to_dict())
            self.session.commit()
            return movement

        return self._retrying(_op)

    def lock_open_session(self, register_id: str) -> RegisterSession:
        """Lock the register's OPEN session; RegisterClosed if there is none."""
        if self.store.get_register(register_id) is None:
            raise NotFound("Register", register_id)
        reg_session = self.store.open_session_for(register_id, lock=True)
        if reg_session is None:
            raise RegisterClosed(
                f"Register {register_id} has no open session",
                details={"register_id": register_id},
            )
        return reg_session

    def append(
        self,
        reg_session: RegisterSession,
        kind: str,
        amount_cents: int,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        note: str | None = None,
        user_id: str | None = None,
        sign: int | None = None,
    ) -> CashMovement:
        """
        Append a movement to a locked session. ``amount_cents`` is positive;
        the sign comes from the kind unless ``sign`` overrides it (reversals).
        """
        if not reg_session.is_open:
            raise RegisterClosed(
                f"Session {reg_session.id} is closed",
                details={"session_id": reg_session.id},
            )
        if amount_cents <= 0:
            raise ValidationError("Cash movement amount must be positive")

        signed = amount_cents * (sign if sign is not None else CashMovementKind.SIGNS[kind])
        if signed < 0 and reg_session.balance_cents + signed < 0:
            raise ValidationError(
                "Insufficient cash in drawer",
                details={
                    "session_id": reg_session.id,
                    "requested": -signed,
                    "available": reg_session.balance_cents,
                },
            )

        reg_session.balance_cents = reg_session.balance_cents + signed
        reg_session.touch()
        movement = CashMovement(
            session_id=reg_session.id,
            kind=kind,
            amount_cents=signed,
            balance_after_cents=reg_session.balance_cents,
            reference_type=reference_type,
            reference_id=reference_id,
            note=note,
            created_by_user_id=user_id,
        )
        self.store.add(movement)
        return movement

    def verify(self) -> list[CashDiscrepancy]:
        return [
            CashDiscrepancy(reg_session.id, reg_session.balance_cents, folded)
            for reg_session, folded in self.store.folded_balances()
            if reg_session.balance_cents != folded
        ]

    def _audit(self, session_id: str, action: str, user_id: str | None, new_values: dict) -> None:
        if self.audit is None:
            return
        self.audit.record("RegisterSession", session_id, action, new_values=new_values,
                          meta=ClientMeta(user_id=user_id))

    def _lock_session(self, session_id: str) -> RegisterSession:
        reg_session = self.store.lock_session(session_id)
        if reg_session is None:
            raise NotFound("RegisterSession", session_id)
        return reg_session

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )
