from .tenancy import Business, Location
from .auth import User
from .catalog import Category, Product, InventoryLevel
from .inventory import InventoryMovement, MovementReference
from .sales import Sale, SaleLine, SaleNumberSequence
from .customers import Customer, LoyaltyTransaction
from .expenses import Expense
from .reports import Report

__all__ = [
    'Business', 'Location',
    'User',
    'Category', 'Product', 'InventoryLevel',
    'InventoryMovement', 'MovementReference',
    'Sale', 'SaleLine', 'SaleNumberSequence',
    'Customer', 'LoyaltyTransaction',
    'Expense',
    'Report',
]
