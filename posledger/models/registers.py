from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class SessionStatus:
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CashMovementKind:
    SALE = "SALE"
    WITHDRAWAL = "WITHDRAWAL"
    DEPOSIT = "DEPOSIT"
    EXPENSE = "EXPENSE"
    INITIAL_CASH = "INITIAL_CASH"
    CREDIT_PAYMENT = "CREDIT_PAYMENT"

    # Sign applied to the (positive) amount supplied by the caller.
    SIGNS = {
        SALE: 1,
        WITHDRAWAL: -1,
        DEPOSIT: 1,
        EXPENSE: -1,
        INITIAL_CASH: 1,
        CREDIT_PAYMENT: 1,
    }


class Register(IdentityMixin, db.Model):
    """
    Physical POS register/terminal.

    Registers are persistent (not deleted when inactive). Each register can
    have many sessions over time but at most one OPEN session.
    """
    __tablename__ = "registers"

    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)
    location = db.Column(db.String(128), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "code": self.code,
            "name": self.name,
            "location": self.location,
            "is_active": self.is_active,
            "version_id": self.version_id,
        }


class RegisterSession(IdentityMixin, db.Model):
    """
    Register shift/session.

    LIFECYCLE:
    - OPEN: accepts cash movements; balance_cents is the running fold of
      the session's movements (the INITIAL_CASH movement included)
    - CLOSED: closing_balance_cents is frozen; no further movements

    open_register_id mirrors register_id while the session is OPEN and is
    NULL once closed. Its unique constraint guarantees one OPEN session per
    register even if two openers race past the application check.
    """
    __tablename__ = "register_sessions"
    __table_args__ = (
        db.UniqueConstraint("open_register_id", name="uq_register_sessions_open_register"),
    )

    register_id = db.Column(db.String(36), db.ForeignKey("registers.id"), nullable=False, index=True)
    open_register_id = db.Column(db.String(36), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=SessionStatus.OPEN, index=True)

    opening_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_balance_cents = db.Column(db.Integer, nullable=True)
    counted_cash_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)

    opened_at = db.Column(db.DateTime, nullable=False, index=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    opened_by_user_id = db.Column(db.String(36), nullable=True)
    closed_by_user_id = db.Column(db.String(36), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    register = db.relationship("Register", backref=db.backref("sessions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "register_id": self.register_id,
            "status": self.status,
            "opening_balance_cents": self.opening_balance_cents,
            "balance_cents": self.balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "counted_cash_cents": self.counted_cash_cents,
            "variance_cents": self.variance_cents,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at),
            "opened_by_user_id": self.opened_by_user_id,
            "closed_by_user_id": self.closed_by_user_id,
            "notes": self.notes,
            "version_id": self.version_id,
        }


class CashMovement(IdentityMixin, db.Model):
    """
    Append-only cash ledger row for one register session.

    amount_cents is signed (WITHDRAWAL and EXPENSE negative).
    balance_after_cents is the session balance right after this movement.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.Index("ix_cash_movements_session_created", "session_id", "created_at"),
    )

    session_id = db.Column(db.String(36), db.ForeignKey("register_sessions.id"), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(36), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.String(36), nullable=True)

    session = db.relationship("RegisterSession", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "balance_after_cents": self.balance_after_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
