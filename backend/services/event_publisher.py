"""
CRM Event Publisher
===================
Publishes payment and submission events to the CRM over RabbitMQ.

Features:
- Typed CRM message with the payload shape the CRM consumer expects
- Topic exchange, persistent JSON messages, routing key = CRM topic
- Circuit breaker around publish so a dead broker fails fast
- In-memory publisher for tests

Publishing is best-effort for the pipeline: callers report failures and
move on.

pip install pydantic aio-pika structlog
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Optional

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
from pydantic import BaseModel, Field

from config import Settings
from schemas.fulfillment import PaymentEvent


# =============================================================================
# CRM MESSAGE
# =============================================================================

class CrmCustomer(BaseModel):
    email: str
    name: Optional[str] = None
    stripeCustomerId: Optional[str] = None


class CrmPayment(BaseModel):
    checkoutSessionId: str
    paymentIntentId: str
    amount: float
    currency: str
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CrmMetadata(BaseModel):
    origin: str = "payment-processor"
    environment: str
    timestamp: int = Field(default_factory=lambda: int(time.time()))


class CrmMessage(BaseModel):
    crmProcess: str
    customer: CrmCustomer
    payment: Optional[CrmPayment] = None
    submission: Optional[dict[str, Any]] = None
    metadata: CrmMetadata

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()), exclude=True)

    def to_message_body(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode()

    @classmethod
    def for_payment(cls, event: PaymentEvent, service_type: str) -> "CrmMessage":
        return cls(
            crmProcess="stripePayment",
            customer=CrmCustomer(
                email=event.customer.email,
                name=event.customer.name or None,
                stripeCustomerId=event.customer.external_id or None,
            ),
            payment=CrmPayment(
                checkoutSessionId=event.id,
                paymentIntentId=event.payment_intent_id,
                amount=event.amount,
                currency=event.currency,
                status=event.payment_status,
                metadata={
                    "serviceType": service_type,
                    "sessionId": event.id,
                    "isBulkOrder": event.is_bulk,
                    **({"bulkSessionId": event.client_reference_id} if event.is_bulk else {}),
                },
            ),
            metadata=CrmMetadata(environment=event.mode.value),
        )


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after repeated failures; lets one probe through after a cool-down."""

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time:
                    elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False

            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Optional[Exception] = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


def with_circuit_breaker(func):
    """Guard an async publisher method with the instance's circuit breaker."""
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        breaker: CircuitBreaker = self.circuit_breaker
        if not await breaker.can_execute():
            raise ConnectionError(f"Circuit breaker {breaker.name} is OPEN")

        try:
            result = await func(self, *args, **kwargs)
        except Exception as e:
            await breaker.record_failure(e)
            raise
        await breaker.record_success()
        return result
    return wrapper


# =============================================================================
# PUBLISHER INTERFACE
# =============================================================================

class IEventPublisher(ABC):
    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def publish(self, topic: str, message: CrmMessage) -> bool:
        pass

    async def health_check(self) -> bool:
        return True


class InMemoryEventPublisher(IEventPublisher):
    """Records published messages instead of sending them."""

    def __init__(self):
        self.published: list[tuple[str, CrmMessage]] = []
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def disconnect(self) -> bool:
        self._connected = False
        return True

    async def health_check(self) -> bool:
        return self._connected

    async def publish(self, topic: str, message: CrmMessage) -> bool:
        async with self._lock:
            self.published.append((topic, message))
        return True


class RabbitMQEventPublisher(IEventPublisher):
    """Topic-exchange publisher with a robust (auto-reconnecting) connection."""

    def __init__(self, url: str, exchange_name: str):
        self._url = url
        self._exchange_name = exchange_name

        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None

        self.circuit_breaker = CircuitBreaker("rabbitmq_publish")
        self._logger = structlog.get_logger().bind(component="rabbitmq_publisher")

    async def connect(self) -> bool:
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self._exchange_name,
                ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            self._logger.error("connection_failed", error=str(e))
            raise

        self._logger.info("connected", exchange=self._exchange_name)
        return True

    async def disconnect(self) -> bool:
        try:
            if self._channel:
                await self._channel.close()
            if self._connection:
                await self._connection.close()
        except Exception as e:
            self._logger.error("disconnect_error", error=str(e))
            return False

        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        if not self._connection or self._connection.is_closed:
            return False
        if not self._channel or self._channel.is_closed:
            return False
        return True

    @with_circuit_breaker
    async def publish(self, topic: str, message: CrmMessage) -> bool:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        await self._exchange.publish(
            Message(
                body=message.to_message_body(),
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type="application/json",
                message_id=message.message_id,
                headers={"crm_process": message.crmProcess},
            ),
            routing_key=topic,
        )
        self._logger.info(
            "event_published",
            routing_key=topic,
            message_id=message.message_id,
            crm_process=message.crmProcess,
        )
        return True


# =============================================================================
# PIPELINE FACADE
# =============================================================================

class EventPublisher:
    """Builds CRM messages and routes them to the configured topic."""

    def __init__(self, publisher: IEventPublisher, settings: Settings):
        self.publisher = publisher
        self.settings = settings
        self._logger = structlog.get_logger().bind(component="event_publisher")

    async def publish(self, message: CrmMessage) -> bool:
        """Returns False, without raising, when no CRM topic is configured."""
        topic = self.settings.crm_topic
        if not topic:
            self._logger.error("crm_topic_not_configured", crm_process=message.crmProcess)
            return False
        return await self.publisher.publish(topic, message)

    async def publish_payment(self, event: PaymentEvent, service_type: str) -> bool:
        return await self.publish(CrmMessage.for_payment(event, service_type))

    async def publish_submission(
        self,
        session_id: str,
        customer_email: str,
        customer_name: str,
        edit_url: str,
        media_urls: dict[str, str],
    ) -> bool:
        message = CrmMessage(
            crmProcess="appraisalSubmission",
            customer=CrmCustomer(email=customer_email, name=customer_name or None),
            submission={
                "sessionId": session_id,
                "editUrl": edit_url,
                "images": media_urls,
            },
            metadata=CrmMetadata(environment=self.settings.environment),
        )
        return await self.publish(message)

    async def publish_bulk_email_update(self, session_id: str, customer_email: str) -> bool:
        message = CrmMessage(
            crmProcess="bulkAppraisalEmailUpdate",
            customer=CrmCustomer(email=customer_email),
            submission={"sessionId": session_id, "timestamp": datetime.now(timezone.utc).isoformat()},
            metadata=CrmMetadata(environment=self.settings.environment),
        )
        return await self.publish(message)
