from .base import IdentityMixin, new_id, same_entity
from .catalog import Product, StockMovement, MovementKind
from .customers import Customer, CreditMovement, CreditMovementKind
from .sales import Sale, SaleLine, SaleStatus, PaymentMethod
from .registers import Register, RegisterSession, CashMovement, CashMovementKind, SessionStatus
from .alerts import Alert, AlertType, AlertSeverity, AlertStatus, open_key_for
from .audit import AuditLog
from .idempotency import IdempotencyRecord, IdempotencyStatus
from .purchasing import PurchaseOrder, PurchaseOrderLine, PurchaseOrderStatus
from .sync import SyncQueueItem, SyncOperation, SyncStatus

__all__ = [
    'IdentityMixin', 'new_id', 'same_entity',
    'Product', 'StockMovement', 'MovementKind',
    'Customer', 'CreditMovement', 'CreditMovementKind',
    'Sale', 'SaleLine', 'SaleStatus', 'PaymentMethod',
    'Register', 'RegisterSession', 'CashMovement', 'CashMovementKind', 'SessionStatus',
    'Alert', 'AlertType', 'AlertSeverity', 'AlertStatus', 'open_key_for',
    'AuditLog',
    'IdempotencyRecord', 'IdempotencyStatus',
    'PurchaseOrder', 'PurchaseOrderLine', 'PurchaseOrderStatus',
    'SyncQueueItem', 'SyncOperation', 'SyncStatus',
]
