"""
Alert engine.

WHY: Surface conditions that need a human (low stock, overdue debt, a
drawer left open) without anyone having to run a report.

DESIGN PRINCIPLES:
- Alerts are derived: evaluate() re-reads state through the rules and
  creates, escalates or resolves the one open alert for (subject, type)
- At most one ACTIVE/ACKNOWLEDGED alert per (subject, type), enforced by
  the unique open_key column; losing the insert race is not an error
- Transitions on RESOLVED/DISMISSED alerts are no-ops
"""

from __future__ import annotations

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from ..errors import NotFound, ValidationError
from ..models import Alert, AlertSeverity, AlertStatus, AlertType, open_key_for
from ..time_utils import utcnow
from .alert_rules import RULES, AlertTrigger, RuleContext
from .concurrency import run_with_retry


class AlertEngine:
    def __init__(
        self,
        store,
        *,
        stock_store,
        credit_store,
        cash_store,
        purchase_store,
        sync_store,
        settings,
    ):
        self.store = store
        self.session = store.session
        self.stock_store = stock_store
        self.credit_store = credit_store
        self.cash_store = cash_store
        self.purchase_store = purchase_store
        self.sync_store = sync_store
        self.settings = settings

    def _context(self) -> RuleContext:
        return RuleContext(
            stock_store=self.stock_store,
            credit_store=self.credit_store,
            cash_store=self.cash_store,
            purchase_store=self.purchase_store,
            sync_store=self.sync_store,
            settings=self.settings,
            now=utcnow(),
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, trigger: AlertTrigger) -> Alert | None:
        """
        Re-derive one condition and reconcile its open alert.

        Returns the open alert after evaluation, or None when the
        condition does not hold.
        """
        if trigger.alert_type not in AlertType.ALL:
            raise ValidationError(f"Unknown alert type {trigger.alert_type!r}")

        def _op():
            return self._reconcile(trigger, self._context())

        return run_with_retry(
            _op,
            session=self.session,
            attempts=self.settings.retry_attempts,
            backoff_base=self.settings.backoff_base,
        )

    def evaluate_many(self, triggers) -> int:
        """
        Evaluate each trigger independently; one failing trigger does not
        stop the rest. Returns how many evaluated cleanly.
        """
        evaluated = 0
        for trigger in dict.fromkeys(triggers):
            try:
                self.evaluate(trigger)
                evaluated += 1
            except Exception:
                if not has_app_context():
                    raise
                current_app.logger.exception(
                    "Alert evaluation failed for %s %s", trigger.alert_type, trigger.subject_id
                )
        return evaluated

    def run_all_checks(self) -> int:
        """Evaluate every candidate subject plus every currently open alert."""
        triggers = []
        for product in self.stock_store.active_products():
            triggers.append(AlertTrigger(AlertType.LOW_STOCK, product.id))
            if product.expires_on is not None:
                triggers.append(AlertTrigger(AlertType.EXPIRING_PRODUCT, product.id))
        for customer in self.credit_store.customers_with_debt():
            triggers.append(AlertTrigger(AlertType.CUSTOMER_DEBT, customer.id))
        for order in self.purchase_store.outstanding():
            triggers.append(AlertTrigger(AlertType.PENDING_PURCHASE_ORDER, order.id))
        for reg_session in self.cash_store.open_sessions():
            triggers.append(AlertTrigger(AlertType.CASH_REGISTER_OPEN, reg_session.id))
        triggers.append(AlertTrigger.sync_pending())

        # Open alerts whose subject is no longer a candidate still need resolving.
        for alert in self.store.open_alerts():
            triggers.append(AlertTrigger(alert.alert_type, alert.subject_id))
        self.session.rollback()

        evaluated = self.evaluate_many(triggers)
        if has_app_context():
            current_app.logger.info("Alert checks evaluated %d triggers", evaluated)
        return evaluated

    def _reconcile(self, trigger: AlertTrigger, ctx: RuleContext) -> Alert | None:
        condition = RULES[trigger.alert_type](ctx, trigger.subject_id)
        subject_type = trigger.subject_type
        existing = self.store.open_alert(subject_type, trigger.subject_id, trigger.alert_type)

        if not condition.holds:
            if existing is not None:
                self._close(existing, AlertStatus.RESOLVED)
                self.session.commit()
            else:
                self.session.rollback()
            return None

        if existing is not None:
            if existing.severity != condition.severity or existing.message != condition.message:
                existing.severity = condition.severity
                existing.severity_rank = AlertSeverity.RANK[condition.severity]
                existing.title = condition.title
                existing.message = condition.message
                existing.touch()
                self.session.commit()
            else:
                self.session.rollback()
            return existing

        alert = Alert(
            alert_type=trigger.alert_type,
            severity=condition.severity,
            severity_rank=AlertSeverity.RANK[condition.severity],
            status=AlertStatus.ACTIVE,
            title=condition.title,
            message=condition.message,
            subject_type=subject_type,
            subject_id=trigger.subject_id,
            open_key=open_key_for(subject_type, trigger.subject_id, trigger.alert_type),
        )
        try:
            self.store.add(alert)
            self.session.commit()
        except IntegrityError:
            # A concurrent evaluation created it first.
            self.session.rollback()
            return self.store.open_alert(subject_type, trigger.subject_id, trigger.alert_type)
        return alert

    # ------------------------------------------------------------------
    # Explicit transitions
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, user_id: str | None = None) -> Alert:
        def _op():
            alert = self._lock(alert_id)
            if alert.status == AlertStatus.ACTIVE:
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.acknowledged_at = utcnow()
                alert.acknowledged_by_user_id = user_id
                alert.touch()
            self.session.commit()
            return alert

        return self._retrying(_op)

    def resolve(self, alert_id: str) -> Alert:
        return self._terminate(alert_id, AlertStatus.RESOLVED)

    def dismiss(self, alert_id: str) -> Alert:
        return self._terminate(alert_id, AlertStatus.DISMISSED)

    def list_active(
        self,
        alert_type: str | None = None,
        severity: str | None = None,
        subject_type: str | None = None,
        statuses: tuple[str, ...] = AlertStatus.OPEN,
    ) -> list[Alert]:
        return self.store.search(
            statuses=statuses,
            alert_type=alert_type,
            severity=severity,
            subject_type=subject_type,
        )

    def get(self, alert_id: str) -> Alert:
        alert = self.store.get(alert_id)
        if alert is None:
            raise NotFound("Alert", alert_id)
        return alert

    def _terminate(self, alert_id: str, status: str) -> Alert:
        def _op():
            alert = self._lock(alert_id)
            if alert.is_open:
                self._close(alert, status)
            self.session.commit()
            return alert

        return self._retrying(_op)

    def _close(self, alert: Alert, status: str) -> None:
        alert.status = status
        alert.open_key = None
        alert.resolved_at = utcnow()
        alert.touch()

    def _lock(self, alert_id: str) -> Alert:
        alert = self.store.lock(alert_id)
        if alert is None:
            raise NotFound("Alert", alert_id)
        return alert

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.settings.retry_attempts,
            backoff_base=self.settings.backoff_base,
        )

