from .tenancy import Store, StoreConfig, DocumentSequence
from .devices import PosDevice
from .sessions import PosSession
from .payments import PaymentMethod, Charge, Receipt
from .gift_cards import GiftCard, GiftCardTransaction
from .fiscal import FiscalEvent

__all__ = [
    'Store', 'StoreConfig', 'DocumentSequence',
    'PosDevice',
    'PosSession',
    'PaymentMethod', 'Charge', 'Receipt',
    'GiftCard', 'GiftCardTransaction',
    'FiscalEvent',
]
