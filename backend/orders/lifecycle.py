"""
Order Lifecycle Controller
==========================
State machine for print orders:

    Created(deferred)            terminal, identifier is the redemption code
    Created(prepaid, pending)    keyed by a tracking id
    Paid(prepaid -> redeemed)    terminal, re-keyed to a fresh redemption code

- Deferred orders get their redemption code at submission
- Prepaid orders get a tracking id and a gateway checkout session; a gateway
  outage degrades the submission instead of failing it
- Verification polling and the gateway webhook share one paid transition:
  reserve a code, relocate files, then commit the re-key in a single store
  write. Re-running any step after a crash or a lost race is harmless.

pip install pydantic structlog
"""

import asyncio
import json
import os
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from orders.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from orders.errors import (
    DuplicateIdentifier,
    GatewayError,
    InvalidSignature,
    InvalidWebhookPayload,
    OrderNotFound,
    PaymentNotCompleted,
    PrintDeskError,
    StorageFailure,
    StorageTimeout,
)
from orders.identifiers import IdentifierGenerator
from orders.models import (
    CustomerDetails,
    IncomingFile,
    Order,
    OrderStatus,
    PayMethod,
    PrintOptions,
    RedemptionCode,
    RedemptionResult,
    SubmissionResult,
    TrackingId,
    WebhookResult,
)
from orders.pricing import quote
from payments.cashfree_client import IPaymentGateway
from storage.file_placement import FilePlacementManager
from storage.order_store import IOrderStore


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LifecycleSettings:
    store_timeout_seconds: float = 5.0
    currency: str = "INR"
    max_identifier_attempts: int = 50

    @classmethod
    def from_env(cls) -> "LifecycleSettings":
        return cls(
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT", "5.0")),
            currency=os.getenv("ORDER_CURRENCY", "INR"),
            max_identifier_attempts=int(os.getenv("MAX_IDENTIFIER_ATTEMPTS", "50")),
        )


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Awaitable[WebhookResult]]

PAYMENT_SUCCESS_EVENTS = ("PAYMENT_SUCCESS", "PAYMENT_SUCCESS_WEBHOOK")
PAYMENT_NOT_COMPLETED_EVENTS = ("PAYMENT_FAILED_WEBHOOK", "PAYMENT_USER_DROPPED_WEBHOOK")


class WebhookRouter:
    """Maps gateway event types to handlers"""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, *event_types: str):
        """Decorator to register handler for one or more event types"""
        def decorator(handler: WebhookHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    @staticmethod
    def event_type_of(event: dict) -> str:
        # Current API versions send "type"; older payloads carry "event"
        return event.get("type") or event.get("event") or "unknown"

    async def route(self, event: dict, correlation_id: str) -> Optional[WebhookResult]:
        """Route event to appropriate handler"""
        event_type = self.event_type_of(event)

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.warning("no_handler", event_type=event_type)
            return None

        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# LIFECYCLE CONTROLLER
# =============================================================================

class OrderLifecycleController:
    """
    Orchestrates order creation, payment reconciliation and redemption.

    Collaborators are injected so tests can substitute in-memory fakes.

    Example:
        controller = OrderLifecycleController(store, files, gateway)
        result = await controller.submit(files, options, 20, PayMethod.PREPAID)
        # Customer pays at the gateway checkout using result.session_handle
        redeemed = await controller.verify_and_redeem(result.tracking_id)
    """

    def __init__(
        self,
        store: IOrderStore,
        files: FilePlacementManager,
        gateway: IPaymentGateway,
        generator: Optional[IdentifierGenerator] = None,
        audit_log: Optional[IAuditLog] = None,
        settings: Optional[LifecycleSettings] = None,
    ):
        self.settings = settings or LifecycleSettings()
        self.store = store
        self.files = files
        self.gateway = gateway
        self.generator = generator or IdentifierGenerator(
            store, max_attempts=self.settings.max_identifier_attempts
        )
        self.audit = audit_log or InMemoryAuditLog()

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="order_lifecycle",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _store(self, operation: Awaitable[Any]) -> Any:
        """Await a store call under the store timeout"""
        try:
            async with asyncio.timeout(self.settings.store_timeout_seconds):
                return await operation
        except asyncio.TimeoutError as e:
            raise StorageTimeout(
                f"Order store did not answer within {self.settings.store_timeout_seconds}s"
            ) from e

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_id: str,
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "system",
    ):
        """Emit audit log entry; a failing audit sink never fails the operation"""
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        log = self._get_logger(correlation_id)
        try:
            await self.audit.append(entry)
        except StorageFailure as e:
            log.error("audit_append_failed", event_type=event_type.value, error=str(e))
            return

        log.info("audit_event", event_type=event_type.value, entity_id=entity_id)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit(
        self,
        files: Sequence[IncomingFile],
        options: PrintOptions,
        price: float,
        pay_method: PayMethod,
        customer: Optional[CustomerDetails] = None,
        page_counts: Optional[Sequence[int]] = None,
    ) -> SubmissionResult:
        """
        Accept an order. Succeeds whenever the files and the order record
        can be stored, whatever the state of the payment gateway.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        log.info("submission_received",
                 pay_method=pay_method.value,
                 file_count=len(files),
                 price=price)

        if page_counts is not None:
            expected = quote(options, page_counts)
            if abs(expected - price) > 0.005:
                log.warning("price_mismatch", submitted=price, expected=expected)

        if pay_method == PayMethod.DEFERRED:
            order = await self._create_order(
                self._new_redemption_code, files, options, price, pay_method, correlation_id
            )
            return SubmissionResult(code=order.key)

        order = await self._create_order(
            self._new_tracking_id, files, options, price, pay_method, correlation_id
        )

        try:
            remote = await self.gateway.create_remote_order(
                order.key, order.price, order.currency, customer or CustomerDetails()
            )
        except GatewayError as e:
            log.warning("payment_degraded",
                        tracking_id=order.key,
                        error=str(e),
                        error_type=type(e).__name__,
                        status_code=e.status_code)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_DEGRADED,
                entity_id=order.key,
                correlation_id=correlation_id,
                metadata={"error": str(e), "status_code": e.status_code},
            )
            return SubmissionResult(tracking_id=order.key, degraded=True)

        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_INITIATED,
            entity_id=order.key,
            correlation_id=correlation_id,
            metadata={"amount": order.price, "currency": order.currency},
        )
        return SubmissionResult(tracking_id=order.key, session_handle=remote.session_handle)

    async def _new_redemption_code(self) -> RedemptionCode:
        return RedemptionCode(value=await self.generator.next_redemption_code())

    async def _new_tracking_id(self) -> TrackingId:
        return TrackingId(value=self.generator.next_tracking_id())

    async def _create_order(
        self,
        new_identifier: Callable[[], Awaitable[Any]],
        files: Sequence[IncomingFile],
        options: PrintOptions,
        price: float,
        pay_method: PayMethod,
        correlation_id: str,
    ) -> Order:
        """
        Place files and persist the order. A collision on the directory or
        on the store key gets one fresh identifier. On failure only the
        directory this call created is removed.
        """
        log = self._get_logger(correlation_id)
        identifier = await new_identifier()
        claimed = None
        paths: list[str] = []

        try:
            try:
                paths = await self.files.place(identifier.value, files)
                claimed = identifier.value
                order = self._new_order(identifier, paths, options, price, pay_method)
                await self._store(self.store.save(order))
            except DuplicateIdentifier:
                # Lost a generation race; one fresh identifier, then give up
                log.warning("identifier_collision", identifier=identifier.value, files_placed=bool(claimed))
                identifier = await new_identifier()
                if claimed:
                    paths = await self.files.relocate(claimed, identifier.value, paths)
                else:
                    paths = await self.files.place(identifier.value, files)
                claimed = identifier.value
                order = self._new_order(identifier, paths, options, price, pay_method)
                await self._store(self.store.save(order))

        except PrintDeskError as e:
            log.error("order_creation_failed",
                      identifier=identifier.value,
                      error=str(e),
                      error_type=type(e).__name__)
            if claimed:
                await self.files.discard(claimed)
            raise

        await self._emit_audit(
            event_type=AuditEventType.ORDER_CREATED,
            entity_id=order.key,
            correlation_id=correlation_id,
            new_state=order.model_dump(mode="json"),
            actor="customer",
        )
        log.info("order_submitted",
                 identifier=order.key,
                 pay_method=pay_method.value,
                 file_count=len(order.file_paths))
        return order

    def _new_order(self, identifier, paths: list[str], options: PrintOptions, price: float,
                   pay_method: PayMethod) -> Order:
        return Order(
            identifier=identifier,
            pay_method=pay_method,
            tracking_id=identifier.value if pay_method == PayMethod.PREPAID else None,
            file_paths=paths,
            options=options,
            price=price,
            currency=self.settings.currency,
        )


    # =========================================================================
    # PAYMENT RECONCILIATION
    # =========================================================================

    async def verify_and_redeem(self, tracking_id: str) -> RedemptionResult:
        """
        Poll the gateway once and, if paid, swap the tracking id for a
        redemption code. Calling again after success returns the same code.

        Raises:
            OrderNotFound: no order was created under this tracking id
            PaymentNotCompleted: gateway does not report the order as paid
            GatewayError / GatewayTimeout: status could not be fetched
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        order = await self._store(self.store.find_by_tracking_id(tracking_id))
        if order is None:
            log.info("verification_unknown_order", tracking_id=tracking_id)
            raise OrderNotFound(tracking_id)

        if order.is_paid:
            log.info("verification_already_paid", tracking_id=tracking_id, code=order.key)
            return RedemptionResult(code=order.key, tracking_id=tracking_id, already_paid=True)

        status = await self.gateway.fetch_remote_status(tracking_id)
        if not status.paid:
            log.info("payment_not_completed", tracking_id=tracking_id, remote_status=status.remote_status)
            raise PaymentNotCompleted(tracking_id, status.remote_status)

        return await self._complete_payment(order, correlation_id, actor="customer")

    async def _reserve_code(self, tracking_id: str) -> str:
        """Reserve a fresh code on the order; one redraw if another order claimed it first."""
        candidate = await self.generator.next_redemption_code()
        try:
            return await self._store(self.store.reserve_redemption_code(tracking_id, candidate))
        except DuplicateIdentifier:
            self._get_logger().warning("reserved_code_collision", tracking_id=tracking_id, code=candidate)

        candidate = await self.generator.next_redemption_code()
        return await self._store(self.store.reserve_redemption_code(tracking_id, candidate))

    async def _settled(self, tracking_id: str) -> RedemptionResult:
        """Result for an order another caller has already moved to paid"""
        order = await self._store(self.store.find_by_tracking_id(tracking_id))
        if order is None or not order.is_paid:
            raise OrderNotFound(tracking_id)
        return RedemptionResult(code=order.key, tracking_id=tracking_id, already_paid=True)

    async def _complete_payment(self, order: Order, correlation_id: str, actor: str) -> RedemptionResult:
        """pending(tracking id) -> paid(redemption code); at most once per order."""
        log = self._get_logger(correlation_id)
        tracking_id = order.tracking_id

        try:
            code = order.reserved_code or await self._reserve_code(tracking_id)
        except OrderNotFound:
            return await self._settled(tracking_id)

        # Files first: a crash here is repaired by re-running with the same reservation
        new_paths = await self.files.relocate(tracking_id, code, order.file_paths)

        try:
            redeemed = await self._store(
                self.store.update_identifier_and_status(tracking_id, code, new_paths)
            )
        except OrderNotFound:
            log.info("payment_already_completed_elsewhere", tracking_id=tracking_id)
            return await self._settled(tracking_id)

        await self._emit_audit(
            event_type=AuditEventType.ORDER_REKEYED,
            entity_id=redeemed.key,
            correlation_id=correlation_id,
            previous_state={"identifier": tracking_id, "status": OrderStatus.PENDING.value},
            new_state={"identifier": redeemed.key, "status": redeemed.status.value},
            actor=actor,
        )
        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_CONFIRMED,
            entity_id=redeemed.key,
            correlation_id=correlation_id,
            metadata={"amount": redeemed.price, "tracking_id": tracking_id},
            actor=actor,
        )
        log.info("payment_confirmed", tracking_id=tracking_id, code=redeemed.key, actor=actor)
        return RedemptionResult(code=redeemed.key, tracking_id=tracking_id)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, timestamp: str, signature: str) -> WebhookResult:
        """
        Verify and apply a gateway webhook delivery.

        Raises:
            InvalidSignature: HMAC mismatch; nothing is parsed or changed
            InvalidWebhookPayload: signed body is not a usable event
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        # Verify signature BEFORE parsing
        if not self.gateway.verify_webhook_signature(raw_body, timestamp, signature):
            log.warning("webhook_signature_invalid", timestamp=timestamp)
            await self._emit_audit(
                event_type=AuditEventType.WEBHOOK_REJECTED,
                entity_id="unknown",
                correlation_id=correlation_id,
                metadata={"reason": "invalid_signature", "timestamp": timestamp},
                actor="webhook",
            )
            raise InvalidSignature("Webhook signature mismatch")

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise InvalidWebhookPayload(f"Webhook body is not JSON: {e}") from e
        if not isinstance(event, dict):
            raise InvalidWebhookPayload("Webhook body is not a JSON object")

        event_type = self.router.event_type_of(event)
        log.info("webhook_received", event_type=event_type)
        await self._emit_audit(
            event_type=AuditEventType.WEBHOOK_RECEIVED,
            entity_id=self._order_id_of(event) or "unknown",
            correlation_id=correlation_id,
            metadata={"event_type": event_type},
            actor="webhook",
        )

        result = await self.router.route(event, correlation_id)
        return result or WebhookResult(status="ignored", event_type=event_type)

    @staticmethod
    def _order_id_of(event: dict) -> Optional[str]:
        data = event.get("data") or {}
        order = data.get("order") or {}
        return order.get("order_id")

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(*PAYMENT_SUCCESS_EVENTS)
        async def handle_payment_success(event: dict, correlation_id: str):
            return await self._on_payment_success(event, correlation_id)

        @self.router.register(*PAYMENT_NOT_COMPLETED_EVENTS)
        async def handle_payment_not_completed(event: dict, correlation_id: str):
            return await self._on_payment_not_completed(event, correlation_id)

    async def _on_payment_success(self, event: dict, correlation_id: str) -> WebhookResult:
        log = self._get_logger(correlation_id)
        event_type = self.router.event_type_of(event)
        tracking_id = self._order_id_of(event)
        if not tracking_id:
            raise InvalidWebhookPayload("Payment event without data.order.order_id")

        order = await self._store(self.store.find_by_tracking_id(tracking_id))
        if order is None:
            log.warning("webhook_unknown_order", tracking_id=tracking_id)
            return WebhookResult(status="unknown_order", event_type=event_type, tracking_id=tracking_id)

        if order.is_paid:
            log.info("webhook_already_paid", tracking_id=tracking_id, code=order.key)
            return WebhookResult(
                status="already_paid", event_type=event_type, tracking_id=tracking_id, code=order.key
            )

        result = await self._complete_payment(order, correlation_id, actor="webhook")
        return WebhookResult(
            status="already_paid" if result.already_paid else "paid",
            event_type=event_type,
            tracking_id=tracking_id,
            code=result.code,
        )

    async def _on_payment_not_completed(self, event: dict, correlation_id: str) -> WebhookResult:
        log = self._get_logger(correlation_id)
        event_type = self.router.event_type_of(event)
        tracking_id = self._order_id_of(event)
        payment = (event.get("data") or {}).get("payment") or {}

        log.warning("payment_not_completed_webhook",
                    event_type=event_type,
                    tracking_id=tracking_id,
                    payment_status=payment.get("payment_status"),
                    payment_message=payment.get("payment_message"))
        return WebhookResult(status="logged", event_type=event_type, tracking_id=tracking_id)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def lookup(self, code: str) -> Optional[Order]:
        """Read-only fetch by current identifier, for the counter and admin views"""
        return await self._store(self.store.find_by_identifier(code))

    async def recent_orders(self, status: Optional[OrderStatus] = None, limit: int = 50) -> list[Order]:
        return await self._store(self.store.list_orders(status=status, limit=limit))

    async def get_audit_trail(self, correlation_id: str) -> list[AuditLogEntry]:
        """Get full audit trail for one operation"""
        return await self.audit.get_by_correlation_id(correlation_id)
