# storage/postgres_store.py
# ============================================================================
# PRINTDESK v1.0 - POSTGRES ORDER STORE
# ============================================================================
# IOrderStore and IAuditLog on top of the shared asyncpg pool in database.py.
# Redemption codes are claimed in redemption_codes inside the same transaction
# as the order write, so a code can back at most one order or reservation.
# ============================================================================

import json
from decimal import Decimal
from functools import wraps
from typing import Optional

import asyncpg
import structlog

from database import Database, log_event, get_order_events
from orders.audit import AuditLogEntry, AuditEventType, IAuditLog
from orders.errors import DuplicateIdentifier, OrderNotFound, StorageFailure
from orders.models import Order, OrderStatus, PrintOptions, RedemptionCode, TrackingId
from storage.order_store import IOrderStore

logger = structlog.get_logger().bind(component="postgres_store")

ORDER_COLUMNS = """
    identifier, identifier_kind, tracking_id, reserved_code, pay_method,
    file_paths, options, price, currency, status, created_at, paid_at
"""


def translate_db_errors(func):
    """Surface driver and connection failures as StorageFailure"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("store_operation_failed", operation=func.__name__, error=str(e))
            raise StorageFailure(f"{func.__name__} failed: {e}") from e
    return wrapper


def _load_json(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def order_from_record(record: asyncpg.Record) -> Order:
    value = record["identifier"]
    if record["identifier_kind"] == "redemption":
        identifier = RedemptionCode(value=value)
    else:
        identifier = TrackingId(value=value)

    return Order(
        identifier=identifier,
        pay_method=record["pay_method"],
        tracking_id=record["tracking_id"],
        reserved_code=record["reserved_code"],
        file_paths=_load_json(record["file_paths"], []),
        options=PrintOptions(**_load_json(record["options"], {})),
        price=float(record["price"]),
        currency=record["currency"],
        status=OrderStatus(record["status"]),
        created_at=record["created_at"],
        paid_at=record["paid_at"],
    )


class PostgresOrderStore(IOrderStore):
    """Order store on the print_orders table"""

    def __init__(self, db=Database):
        self.db = db

    @translate_db_errors
    async def find_by_identifier(self, identifier: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            f"SELECT {ORDER_COLUMNS} FROM print_orders WHERE identifier = $1",
            identifier,
        )
        return order_from_record(row) if row else None

    @translate_db_errors
    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            f"SELECT {ORDER_COLUMNS} FROM print_orders WHERE tracking_id = $1",
            tracking_id,
        )
        return order_from_record(row) if row else None

    @translate_db_errors
    async def exists(self, identifier: str) -> bool:
        return bool(await self.db.fetch_val(
            """
            SELECT EXISTS (SELECT 1 FROM print_orders WHERE identifier = $1)
                OR EXISTS (SELECT 1 FROM redemption_codes WHERE code = $1)
            """,
            identifier,
        ))

    @translate_db_errors
    async def save(self, order: Order) -> Order:
        claims = [order.key] if isinstance(order.identifier, RedemptionCode) else []
        if order.reserved_code and order.reserved_code not in claims:
            claims.append(order.reserved_code)
        owner = order.tracking_id or order.key

        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    for code in claims:
                        await conn.execute(
                            "INSERT INTO redemption_codes (code, claimed_by) VALUES ($1, $2)",
                            code,
                            owner,
                        )
                    result = await conn.execute(
                        """
                        INSERT INTO print_orders
                        (identifier, identifier_kind, tracking_id, reserved_code, pay_method,
                         file_paths, options, price, currency, status, created_at, paid_at)
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12)
                        """,
                        order.key,
                        order.identifier.kind,
                        order.tracking_id,
                        order.reserved_code,
                        order.pay_method.value,
                        json.dumps(order.file_paths),
                        order.options.model_dump_json(),
                        Decimal(str(order.price)),
                        order.currency,
                        order.status.value,
                        order.created_at,
                        order.paid_at,
                    )
        except asyncpg.UniqueViolationError:
            raise DuplicateIdentifier(order.key)

        if result != "INSERT 0 1":
            raise DuplicateIdentifier(order.key)
        return order

    @translate_db_errors
    async def reserve_redemption_code(self, tracking_id: str, code: str) -> str:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT identifier_kind, reserved_code FROM print_orders
                    WHERE identifier = $1
                    FOR UPDATE
                    """,
                    tracking_id,
                )
                if row is None or row["identifier_kind"] != "tracking":
                    raise OrderNotFound(tracking_id)
                if row["reserved_code"]:
                    return row["reserved_code"]

                try:
                    await conn.execute(
                        "INSERT INTO redemption_codes (code, claimed_by) VALUES ($1, $2)",
                        code,
                        tracking_id,
                    )
                except asyncpg.UniqueViolationError:
                    raise DuplicateIdentifier(code)

                await conn.execute(
                    """
                    UPDATE print_orders
                    SET reserved_code = $2, updated_at = NOW()
                    WHERE identifier = $1
                    """,
                    tracking_id,
                    code,
                )
        return code

    @translate_db_errors
    async def update_identifier_and_status(
        self, old_id: str, new_id: str, new_files: list[str]
    ) -> Order:
        try:
            row = await self.db.fetch_one(
                f"""
                UPDATE print_orders
                SET identifier = $2,
                    identifier_kind = 'redemption',
                    reserved_code = $2,
                    status = 'paid',
                    file_paths = $3::jsonb,
                    paid_at = NOW(),
                    updated_at = NOW()
                WHERE identifier = $1 AND status = 'pending'
                RETURNING {ORDER_COLUMNS}
                """,
                old_id,
                new_id,
                json.dumps(new_files),
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateIdentifier(new_id)

        if row is None:
            raise OrderNotFound(old_id)
        return order_from_record(row)

    @translate_db_errors
    async def list_orders(
        self, status: Optional[OrderStatus] = None, limit: int = 50
    ) -> list[Order]:
        if status:
            rows = await self.db.fetch_all(
                f"""
                SELECT {ORDER_COLUMNS} FROM print_orders
                WHERE status = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                status.value,
                limit,
            )
        else:
            rows = await self.db.fetch_all(
                f"""
                SELECT {ORDER_COLUMNS} FROM print_orders
                ORDER BY created_at DESC
                LIMIT $1
                """,
                limit,
            )
        return [order_from_record(row) for row in rows]


class PostgresAuditLog(IAuditLog):
    """Audit log persisted through the Black Box"""

    @translate_db_errors
    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            correlation_id=entry.correlation_id,
            event_type=entry.event_type.value,
            entity_id=entry.entity_id,
            payload={
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            actor=entry.actor,
            event_id=entry.log_id,
            timestamp=entry.timestamp,
        )

    @translate_db_errors
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await get_order_events(correlation_id=correlation_id)
        entries = []
        for row in reversed(rows):
            payload = row.get("payload") or {}
            entries.append(AuditLogEntry(
                log_id=str(row["id"]),
                correlation_id=row["correlation_id"],
                event_type=AuditEventType(row["event_type"]),
                entity_id=row["entity_id"],
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=row["timestamp"],
                actor=row["actor"],
            ))
        return entries
