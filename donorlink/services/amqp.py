# SPDX-License-Identifier: Apache-2.0

"""
AMQP notification transport.

Publishes one message per donor notification to a topic exchange.
Delivery channels (push, WhatsApp, SMS) are handled by downstream
consumers bound to ``donor.<channel>`` routing keys.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional
from urllib.parse import urlparse

import pika
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode

from ..config import AMQPConfig, load_amqp_config
from ..exceptions import NotificationServiceUnavailableError
from ..models.base import utcnow
from .dispatcher import SendResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CHANNEL = "whatsapp"


class AMQPNotificationSender:
    """
    Notification interface backed by an AMQP broker.

    A fresh connection is opened per publish and always closed afterwards,
    so the sender holds no broker state between sends.
    """

    def __init__(self, config: AMQPConfig):
        self.config = config
        self._connection_params = self._parse_connection_url(config.url)

    def _parse_connection_url(self, url: str) -> pika.ConnectionParameters:
        """Parse AMQP URL and create connection parameters."""
        parsed = urlparse(url)

        return pika.ConnectionParameters(
            host=parsed.hostname or 'localhost',
            port=parsed.port or 5672,
            virtual_host=parsed.path.lstrip('/') or '/',
            credentials=pika.PlainCredentials(
                username=parsed.username or 'guest',
                password=parsed.password or 'guest'
            ),
            socket_timeout=self.config.connection_timeout,
            heartbeat=self.config.heartbeat,
            blocked_connection_timeout=self.config.blocked_connection_timeout
        )

    @contextmanager
    def _get_connection(self) -> Generator[pika.channel.Channel, None, None]:
        """
        Context manager for AMQP connections with automatic cleanup.

        Raises:
            NotificationServiceUnavailableError: If the broker cannot be reached
        """
        connection = None
        channel = None

        try:
            try:
                connection = pika.BlockingConnection(self._connection_params)
                channel = connection.channel()
                channel.exchange_declare(
                    exchange=self.config.exchange,
                    exchange_type='topic',
                    durable=True
                )
                channel.confirm_delivery()
            except pika.exceptions.AMQPConnectionError as e:
                logger.error(
                    "AMQP connection failed",
                    extra={
                        "extra_fields": {
                            "error": str(e),
                            "host": self._connection_params.host,
                            "port": self._connection_params.port
                        }
                    },
                    exc_info=True
                )
                raise NotificationServiceUnavailableError(f"Failed to connect to AMQP broker: {e}") from e

            yield channel

        finally:
            if channel and not channel.is_closed:
                try:
                    channel.close()
                except Exception as e:
                    logger.warning(f"Error closing AMQP channel: {e}")

            if connection and not connection.is_closed:
                try:
                    connection.close()
                except Exception as e:
                    logger.warning(f"Error closing AMQP connection: {e}")

    def build_message(
        self,
        donor_id: str,
        channel_preferences: List[str],
        message_template: str,
        template_params: List[str],
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return {
            "donor_id": donor_id,
            "correlation_id": correlation_id,
            "channels": list(channel_preferences),
            "template": message_template,
            "template_params": list(template_params),
            "message": message,
            "metadata": metadata or {},
            "timestamp": utcnow().isoformat(),
        }

    def send(
        self,
        donor_id: str,
        channel_preferences: List[str],
        message_template: str,
        template_params: List[str],
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """
        Publish one donor notification.

        Returns:
            SendResult, unsuccessful when the broker refused or could not route the message

        Raises:
            NotificationServiceUnavailableError: If no connection can be opened
        """
        correlation_id = str(uuid.uuid4())
        routing_key = f"donor.{channel_preferences[0] if channel_preferences else DEFAULT_CHANNEL}"

        with tracer.start_as_current_span("amqp.publish") as span:
            span.set_attributes({
                "donor.id": donor_id,
                "amqp.exchange": self.config.exchange,
                "amqp.routing_key": routing_key,
                "amqp.correlation_id": correlation_id
            })

            payload = self.build_message(
                donor_id, channel_preferences, message_template, template_params,
                message=message, metadata=metadata, correlation_id=correlation_id
            )
            headers: Dict[str, str] = {}
            inject(headers)

            try:
                body = json.dumps(payload, default=str)
            except (TypeError, ValueError) as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                return SendResult(success=False, error=f"Message serialization failed: {e}")

            with self._get_connection() as channel:
                try:
                    channel.basic_publish(
                        exchange=self.config.exchange,
                        routing_key=routing_key,
                        body=body,
                        properties=pika.BasicProperties(
                            correlation_id=correlation_id,
                            message_id=correlation_id,
                            timestamp=int(time.time()),
                            delivery_mode=2,  # Persistent message
                            content_type='application/json',
                            headers=headers
                        ),
                        mandatory=True
                    )
                except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    logger.warning(
                        "Notification was not accepted by the broker",
                        extra={"extra_fields": {
                            "donor_id": donor_id,
                            "routing_key": routing_key,
                            "correlation_id": correlation_id,
                            "error": str(e)
                        }}
                    )
                    return SendResult(success=False, message_id=correlation_id, error=str(e))
                except pika.exceptions.AMQPConnectionError as e:
                    span.record_exception(e)
                    raise NotificationServiceUnavailableError(f"AMQP connection lost: {e}") from e

            span.set_status(Status(StatusCode.OK))
            logger.debug(
                "Notification published",
                extra={"extra_fields": {
                    "donor_id": donor_id,
                    "routing_key": routing_key,
                    "correlation_id": correlation_id
                }}
            )
            return SendResult(success=True, message_id=correlation_id)

    def health_check(self) -> Dict[str, Any]:
        """Open and close a connection to verify the broker is reachable."""
        try:
            with self._get_connection():
                pass
            return {
                "status": "healthy",
                "host": self._connection_params.host,
                "exchange": self.config.exchange
            }
        except NotificationServiceUnavailableError as e:
            return {"status": "unhealthy", "error": str(e)}


def create_notification_sender(config: Optional[AMQPConfig] = None) -> AMQPNotificationSender:
    """Create a sender from explicit config or AMQP_* environment variables."""
    return AMQPNotificationSender(config or load_amqp_config())
