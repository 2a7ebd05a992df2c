"""
Orders services package - modular service layer for the order engine.

- OrderService: Order lifecycle (create, bill, cancel, debt) and per-order locking
- OrderCalculationService: Totals recomputation
- OrderItemService: Item management (add, update, remove, void)
- KitchenService: Send-to-kitchen batches and item readiness
- SplitBillService: Moving items to a new order on the same table
- ConflictResolver: Resolving cloud/local duplicate orders
"""

# Core order operations
from .order_service import OrderService

# Calculation operations
from .calculation_service import OrderCalculationService

# Item management
from .item_service import OrderItemService

# Kitchen operations
from .kitchen_service import KitchenService

# Two-order operations
from .split_service import SplitBillService
from .conflict_service import ConflictResolver, Merge, KeepCloud, KeepLocal, CancelAll, parse_resolution

__all__ = [
    'OrderService',
    'OrderCalculationService',
    'OrderItemService',
    'KitchenService',
    'SplitBillService',
    'ConflictResolver',
    'Merge',
    'KeepCloud',
    'KeepLocal',
    'CancelAll',
    'parse_resolution',
]
