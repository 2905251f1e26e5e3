from .auth import User, SessionToken
from .projects import Project, ClientProjectAccess
from .pallets import Pallet
from .receipts import ReceiptLine, ReceiptPhoto, SkuClientComment
from .stock import StockItem, StockImportRun
from .audit import AuditLog, ExportRun

__all__ = [
    'User', 'SessionToken',
    'Project', 'ClientProjectAccess',
    'Pallet',
    'ReceiptLine', 'ReceiptPhoto', 'SkuClientComment',
    'StockItem', 'StockImportRun',
    'AuditLog', 'ExportRun',
]
