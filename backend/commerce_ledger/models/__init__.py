from .inventory import Product, StockReservation, StockMovement
from .customers import Customer, StoreCreditAccount, StoreCreditTransaction
from .sales import Sale, SaleLine
from .documents import Return, ReturnLine, ExchangeLine
from .imports import ImportRecord

__all__ = [
    'Product', 'StockReservation', 'StockMovement',
    'Customer', 'StoreCreditAccount', 'StoreCreditTransaction',
    'Sale', 'SaleLine',
    'Return', 'ReturnLine', 'ExchangeLine',
    'ImportRecord',
]
