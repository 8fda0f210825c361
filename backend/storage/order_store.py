# storage/order_store.py
# ============================================================================
# PRINTDESK v1.0 - ORDER STORE
# ============================================================================
# Store contract keyed by an order's current identifier, plus the
# in-memory implementation used by tests and single-process deployments.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from orders.errors import DuplicateIdentifier, OrderNotFound
from orders.models import Order, OrderStatus, TrackingId


class IOrderStore(ABC):
    """
    Persistent order collection.

    Implementations must make update_identifier_and_status a single atomic
    step: a reader sees the order under the old key or the new key, never
    under neither.
    """

    @abstractmethod
    async def find_by_identifier(self, identifier: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def exists(self, identifier: str) -> bool:
        """True if the value is a current key or a reserved redemption code."""
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Insert a new order. Raises DuplicateIdentifier on key collision."""
        pass

    @abstractmethod
    async def reserve_redemption_code(self, tracking_id: str, code: str) -> str:
        """
        Attach `code` to the pending order created under `tracking_id` unless
        a code is already reserved. Returns the reserved code in effect.
        """
        pass

    @abstractmethod
    async def update_identifier_and_status(
        self, old_id: str, new_id: str, new_files: list[str]
    ) -> Order:
        """Re-key a pending order to `new_id` and mark it paid."""
        pass

    @abstractmethod
    async def list_orders(
        self, status: Optional[OrderStatus] = None, limit: int = 50
    ) -> list[Order]:
        pass


class InMemoryOrderStore(IOrderStore):
    """Order store backed by a dict, guarded by a single asyncio lock"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def find_by_identifier(self, identifier: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(identifier)
            return order.model_copy(deep=True) if order else None

    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.tracking_id == tracking_id:
                    return order.model_copy(deep=True)
            return None

    async def exists(self, identifier: str) -> bool:
        async with self._lock:
            return self._in_use(identifier)

    def _in_use(self, identifier: str) -> bool:
        if identifier in self._orders:
            return True
        return any(o.reserved_code == identifier for o in self._orders.values())

    async def save(self, order: Order) -> Order:
        async with self._lock:
            if self._in_use(order.key):
                raise DuplicateIdentifier(order.key)
            self._orders[order.key] = order.model_copy(deep=True)
            return order

    async def reserve_redemption_code(self, tracking_id: str, code: str) -> str:
        async with self._lock:
            order = self._orders.get(tracking_id)
            if order is None or not isinstance(order.identifier, TrackingId):
                raise OrderNotFound(tracking_id)
            if order.reserved_code:
                return order.reserved_code
            if self._in_use(code):
                raise DuplicateIdentifier(code)
            self._orders[tracking_id] = order.model_copy(update={"reserved_code": code})
            return code

    async def update_identifier_and_status(
        self, old_id: str, new_id: str, new_files: list[str]
    ) -> Order:
        async with self._lock:
            order = self._orders.get(old_id)
            if order is None or order.status != OrderStatus.PENDING:
                raise OrderNotFound(old_id)
            if new_id in self._orders:
                raise DuplicateIdentifier(new_id)
            redeemed = order.redeem(new_id, new_files)
            # Insert before delete; both happen under the lock
            self._orders[new_id] = redeemed
            del self._orders[old_id]
            return redeemed.model_copy(deep=True)

    async def list_orders(
        self, status: Optional[OrderStatus] = None, limit: int = 50
    ) -> list[Order]:
        async with self._lock:
            orders = [
                o for o in self._orders.values()
                if status is None or o.status == status
            ]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return [o.model_copy(deep=True) for o in orders[:limit]]
