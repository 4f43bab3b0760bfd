from .catalog import Warehouse, Product, Batch
from .invoices import Invoice, InvoiceItem, InvoiceItemAllocation, DocumentSequence
from .offline import OfflineTransaction
from .loyalty import LoyaltyProgram, LoyaltyPoints, LoyaltyTransaction
from .consignment import Consignment, ConsignmentItem
from .delivery import DeliveryZone, DeliveryOrder, DeliveryTrackingNote
from .audit import AuditEvent

__all__ = [
    'Warehouse', 'Product', 'Batch',
    'Invoice', 'InvoiceItem', 'InvoiceItemAllocation', 'DocumentSequence',
    'OfflineTransaction',
    'LoyaltyProgram', 'LoyaltyPoints', 'LoyaltyTransaction',
    'Consignment', 'ConsignmentItem',
    'DeliveryZone', 'DeliveryOrder', 'DeliveryTrackingNote',
    'AuditEvent',
]
