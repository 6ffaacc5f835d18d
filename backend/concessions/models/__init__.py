from .tenancy import Theater, TheaterPaymentConfig
from .auth import User, SessionToken
from .catalog import Category, KioskType, Product, ComboOffer, ComboComponent
from .stock import StockMonth, StockEntry
from .orders import Order, OrderItem, OrderSequence
from .payments import PaymentIntent, PaymentAttempt
from .broadcast import BroadcastEvent

__all__ = [
    "Theater",
    "TheaterPaymentConfig",
    "User",
    "SessionToken",
    "Category",
    "KioskType",
    "Product",
    "ComboOffer",
    "ComboComponent",
    "StockMonth",
    "StockEntry",
    "Order",
    "OrderItem",
    "OrderSequence",
    "PaymentIntent",
    "PaymentAttempt",
    "BroadcastEvent",
]
