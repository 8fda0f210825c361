"""
Order Audit Trail
=================
Append-only record of every lifecycle state change, grouped by the
correlation id of the operation that produced it.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_REKEYED = "order.rekeyed"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_DEGRADED = "payment.degraded"
    PAYMENT_CONFIRMED = "payment.confirmed"
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_REJECTED = "webhook.rejected"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor: str = "system"  # "system", "webhook", "customer"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_id == entity_id]
