# Overview: SQLAlchemy-backed storage adapters, one narrow store per aggregate.

"""
Storage ports for the ledger core.

Each store wraps one SQLAlchemy session and exposes only the reads and
appends its aggregate needs. Services depend on these stores rather than on
the session directly, which keeps every query for an aggregate in one place.

Stores never commit; transaction boundaries belong to the services.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update

from .models import (
    Alert,
    AlertStatus,
    AuditLog,
    CashMovement,
    CreditMovement,
    Customer,
    IdempotencyRecord,
    Product,
    PurchaseOrder,
    PurchaseOrderStatus,
    Register,
    RegisterSession,
    Sale,
    SessionStatus,
    StockMovement,
    SyncQueueItem,
    SyncStatus,
)
from .services.concurrency import lock_for_update


class _Store:
    def __init__(self, session):
        self.session = session

    def add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj


class StockLedgerStore(_Store):
    def get_product(self, product_id: str) -> Product | None:
        return self.session.get(Product, product_id)

    def lock_product(self, product_id: str) -> Product | None:
        return lock_for_update(self.session.query(Product).filter_by(id=product_id)).first()

    def movements_for(self, product_id: str) -> list[StockMovement]:
        return self.session.query(StockMovement).filter_by(
            product_id=product_id
        ).order_by(StockMovement.created_at, StockMovement.id).all()

    def movements_for_reference(self, reference_type: str, reference_id: str) -> list[StockMovement]:
        return self.session.query(StockMovement).filter_by(
            reference_type=reference_type,
            reference_id=reference_id,
        ).order_by(StockMovement.created_at).all()

    def sum_deltas(self, product_id: str) -> int:
        q = self.session.query(
            func.coalesce(func.sum(StockMovement.quantity_delta), 0)
        ).filter(StockMovement.product_id == product_id)
        return int(q.scalar() or 0)

    def active_products(self) -> list[Product]:
        return self.session.query(Product).filter_by(is_active=True).order_by(Product.sku).all()

    def folded_quantities(self) -> list[tuple[Product, int]]:
        """Every product with the fold of its movement deltas."""
        folded = func.coalesce(func.sum(StockMovement.quantity_delta), 0)
        rows = self.session.query(Product, folded).outerjoin(
            StockMovement, StockMovement.product_id == Product.id
        ).group_by(Product.id).all()
        return [(product, int(total)) for product, total in rows]


class CreditLedgerStore(_Store):
    def get_customer(self, customer_id: str) -> Customer | None:
        return self.session.get(Customer, customer_id)

    def lock_customer(self, customer_id: str) -> Customer | None:
        return lock_for_update(self.session.query(Customer).filter_by(id=customer_id)).first()

    def movements_for(self, customer_id: str) -> list[CreditMovement]:
        return self.session.query(CreditMovement).filter_by(
            customer_id=customer_id
        ).order_by(CreditMovement.created_at, CreditMovement.id).all()

    def sum_amounts(self, customer_id: str) -> int:
        q = self.session.query(
            func.coalesce(func.sum(CreditMovement.amount_cents), 0)
        ).filter(CreditMovement.customer_id == customer_id)
        return int(q.scalar() or 0)

    def customers_with_debt(self) -> list[Customer]:
        return self.session.query(Customer).filter(
            Customer.outstanding_cents > 0
        ).order_by(Customer.name).all()

    def folded_balances(self) -> list[tuple[Customer, int]]:
        folded = func.coalesce(func.sum(CreditMovement.amount_cents), 0)
        rows = self.session.query(Customer, folded).outerjoin(
            CreditMovement, CreditMovement.customer_id == Customer.id
        ).group_by(Customer.id).all()
        return [(customer, int(total)) for customer, total in rows]


class CashLedgerStore(_Store):
    def get_register(self, register_id: str) -> Register | None:
        return self.session.get(Register, register_id)

    def lock_register(self, register_id: str) -> Register | None:
        return lock_for_update(self.session.query(Register).filter_by(id=register_id)).first()

    def all_registers(self, include_inactive: bool = False) -> list[Register]:
        q = self.session.query(Register)
        if not include_inactive:
            q = q.filter_by(is_active=True)
        return q.order_by(Register.code).all()

    def get_session(self, session_id: str) -> RegisterSession | None:
        return self.session.get(RegisterSession, session_id)

    def lock_session(self, session_id: str) -> RegisterSession | None:
        return lock_for_update(self.session.query(RegisterSession).filter_by(id=session_id)).first()

    def open_session_for(self, register_id: str, *, lock: bool = False) -> RegisterSession | None:
        q = self.session.query(RegisterSession).filter_by(
            register_id=register_id,
            status=SessionStatus.OPEN,
        )
        if lock:
            q = lock_for_update(q)
        return q.first()

    def open_sessions(self) -> list[RegisterSession]:
        return self.session.query(RegisterSession).filter_by(
            status=SessionStatus.OPEN
        ).order_by(RegisterSession.opened_at).all()

    def movements_for(self, session_id: str) -> list[CashMovement]:
        return self.session.query(CashMovement).filter_by(
            session_id=session_id
        ).order_by(CashMovement.created_at, CashMovement.id).all()

    def sum_amounts(self, session_id: str) -> int:
        q = self.session.query(
            func.coalesce(func.sum(CashMovement.amount_cents), 0)
        ).filter(CashMovement.session_id == session_id)
        return int(q.scalar() or 0)

    def totals_by_kind(self, session_id: str) -> dict[str, int]:
        rows = self.session.query(
            CashMovement.kind, func.sum(CashMovement.amount_cents)
        ).filter(CashMovement.session_id == session_id).group_by(CashMovement.kind).all()
        return {kind: int(total or 0) for kind, total in rows}

    def folded_balances(self) -> list[tuple[RegisterSession, int]]:
        folded = func.coalesce(func.sum(CashMovement.amount_cents), 0)
        rows = self.session.query(RegisterSession, folded).outerjoin(
            CashMovement, CashMovement.session_id == RegisterSession.id
        ).group_by(RegisterSession.id).all()
        return [(reg_session, int(total)) for reg_session, total in rows]


class SaleStore(_Store):
    def get(self, sale_id: str) -> Sale | None:
        return self.session.get(Sale, sale_id)

    def lock(self, sale_id: str) -> Sale | None:
        return lock_for_update(self.session.query(Sale).filter_by(id=sale_id)).first()

    def for_session(self, session_id: str) -> list[Sale]:
        return self.session.query(Sale).filter_by(
            register_session_id=session_id
        ).order_by(Sale.created_at).all()


class AlertStore(_Store):
    def get(self, alert_id: str) -> Alert | None:
        return self.session.get(Alert, alert_id)

    def lock(self, alert_id: str) -> Alert | None:
        return lock_for_update(self.session.query(Alert).filter_by(id=alert_id)).first()

    def open_alert(self, subject_type: str, subject_id: str, alert_type: str) -> Alert | None:
        return self.session.query(Alert).filter(
            Alert.subject_type == subject_type,
            Alert.subject_id == subject_id,
            Alert.alert_type == alert_type,
            Alert.status.in_(AlertStatus.OPEN),
        ).first()

    def open_alerts(self) -> list[Alert]:
        return self.session.query(Alert).filter(Alert.status.in_(AlertStatus.OPEN)).all()

    def search(
        self,
        *,
        statuses: tuple[str, ...] = AlertStatus.OPEN,
        alert_type: str | None = None,
        severity: str | None = None,
        subject_type: str | None = None,
    ) -> list[Alert]:
        q = self.session.query(Alert).filter(Alert.status.in_(statuses))
        if alert_type:
            q = q.filter(Alert.alert_type == alert_type)
        if severity:
            q = q.filter(Alert.severity == severity)
        if subject_type:
            q = q.filter(Alert.subject_type == subject_type)
        return q.order_by(Alert.severity_rank.desc(), Alert.created_at.desc()).all()


class AuditStore(_Store):
    def for_subject(self, subject_type: str, subject_id: str) -> list[AuditLog]:
        return self.session.query(AuditLog).filter_by(
            subject_type=subject_type,
            subject_id=subject_id,
        ).order_by(AuditLog.created_at.desc()).all()

    def for_user(self, user_id: str, limit: int) -> list[AuditLog]:
        return self.session.query(AuditLog).filter_by(
            user_id=user_id
        ).order_by(AuditLog.created_at.desc()).limit(limit).all()

    def between(self, start: datetime, end: datetime) -> list[AuditLog]:
        return self.session.query(AuditLog).filter(
            AuditLog.created_at >= start,
            AuditLog.created_at <= end,
        ).order_by(AuditLog.created_at.desc()).all()

    def recent(self, limit: int) -> list[AuditLog]:
        return self.session.query(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit).all()

    def delete_older_than(self, cutoff: datetime) -> int:
        return self.session.query(AuditLog).filter(
            AuditLog.created_at < cutoff
        ).delete(synchronize_session=False)


class IdempotencyStore(_Store):
    def get(self, key: str) -> IdempotencyRecord | None:
        return self.session.query(IdempotencyRecord).filter_by(key=key).populate_existing().first()

    def compare_and_set(self, key: str, *, expected_token: str, expected_status: str, **values) -> bool:
        """
        Conditional update keyed on (key, claim_token, status).

        Returns True iff exactly this caller's expected state was replaced.
        """
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.claim_token == expected_token,
                IdempotencyRecord.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def delete_expired(self, now: datetime) -> int:
        return self.session.query(IdempotencyRecord).filter(
            IdempotencyRecord.expires_at < now
        ).delete(synchronize_session=False)


class PurchaseOrderStore(_Store):
    def get(self, order_id: str) -> PurchaseOrder | None:
        return self.session.get(PurchaseOrder, order_id)

    def lock(self, order_id: str) -> PurchaseOrder | None:
        return lock_for_update(self.session.query(PurchaseOrder).filter_by(id=order_id)).first()

    def outstanding(self) -> list[PurchaseOrder]:
        return self.session.query(PurchaseOrder).filter(
            PurchaseOrder.status.in_(PurchaseOrderStatus.OUTSTANDING)
        ).order_by(PurchaseOrder.created_at).all()


class SyncQueueStore(_Store):
    def get(self, item_id: str) -> SyncQueueItem | None:
        return self.session.get(SyncQueueItem, item_id)

    def pending(self, limit: int) -> list[SyncQueueItem]:
        return self.session.query(SyncQueueItem).filter_by(
            status=SyncStatus.PENDING
        ).order_by(SyncQueueItem.created_at).limit(limit).all()

    def failed(self) -> list[SyncQueueItem]:
        return self.session.query(SyncQueueItem).filter_by(status=SyncStatus.FAILED).all()

    def pending_count(self) -> int:
        return self.session.query(SyncQueueItem).filter_by(status=SyncStatus.PENDING).count()

    def delete_synced_before(self, cutoff: datetime) -> int:
        return self.session.query(SyncQueueItem).filter(
            SyncQueueItem.status == SyncStatus.SYNCED,
            SyncQueueItem.synced_at < cutoff,
        ).delete(synchronize_session=False)
