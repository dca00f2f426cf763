# SPDX-License-Identifier: Apache-2.0

"""
Notification dispatch for scored donors.

Sends are best-effort: a failed send is counted and the batch goes on.
Nothing is retried inside a cycle; the next escalation round re-scores
and naturally retries. Sub-batches are separated by a fixed delay to
protect downstream channels.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from opentelemetry import trace

from ..config import MatchingConfig
from ..exceptions import NotificationServiceUnavailableError
from ..models.entities import BloodRequest, ScoredDonor
from ..models.enums import NotificationChannel

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

URGENCY_MARKERS = {
    "critical": "🚨",
    "urgent": "⚡",
    "scheduled": "📅",
}
DEFAULT_MARKER = "🩸"

DEFAULT_CHANNELS = (
    NotificationChannel.PUSH.value,
    NotificationChannel.WHATSAPP.value,
    NotificationChannel.SMS.value,
)


@dataclass
class SendResult:
    """Outcome of one notification send."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DonorNotification:
    """Everything the notification interface needs for one donor."""
    donor_id: str
    channel_preferences: List[str]
    message_template: str
    template_params: List[str]
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchResult:
    """Result of dispatching one matching cycle."""
    successful: int = 0
    failed: int = 0
    attempted: int = 0
    sub_batches: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, int]:
        return {"successful": self.successful, "failed": self.failed}


BatchCallback = Callable[[int, int], None]


def _value(enum_or_value: Any) -> Any:
    return getattr(enum_or_value, "value", enum_or_value)


def format_blood_request_message(request: BloodRequest, donor: ScoredDonor) -> str:
    """Render the message text sent to one donor."""
    urgency = _value(request.urgency)
    marker = URGENCY_MARKERS.get(urgency, DEFAULT_MARKER)
    patient = request.patient_name or "Patient"
    age = f" ({request.patient_age}y)" if request.patient_age is not None else ""

    return (
        f"{marker} BLOOD DONATION REQUEST\n"
        f"\n"
        f"Dear {donor.name or 'Donor'},\n"
        f"\n"
        f"Blood Type Needed: {request.patient_blood_type}\n"
        f"Patient: {patient}{age}\n"
        f"Hospital: {request.hospital.name}\n"
        f"Distance: {donor.distance_km:.1f}km from you\n"
        f"Contact: {request.hospital.contact_number or 'N/A'}\n"
        f"\n"
        f"Urgency: {urgency.upper()}\n"
        f"Units Needed: {request.units_needed}\n"
        f"\n"
        f"Can you help save a life?\n"
        f"Reply YES to donate or NO if unavailable."
    )


def build_template_params(request: BloodRequest, donor: ScoredDonor) -> List[str]:
    hospital = request.hospital
    location = ", ".join(part for part in (hospital.city, hospital.state) if part)
    return [
        request.patient_blood_type,
        request.patient_name or "Patient",
        hospital.name,
        location,
        hospital.contact_number or "",
        f"{donor.distance_km:.1f}km away",
    ]


def channel_preferences(donor: ScoredDonor) -> List[str]:
    """Default channels with the donor's preferred one first."""
    preferred = _value(donor.preferred_channel) or NotificationChannel.WHATSAPP.value
    return [preferred] + [channel for channel in DEFAULT_CHANNELS if channel != preferred]


def build_notification(request: BloodRequest, donor: ScoredDonor) -> DonorNotification:
    urgency = _value(request.urgency)
    return DonorNotification(
        donor_id=donor.donor_id,
        channel_preferences=channel_preferences(donor),
        message_template=f"blood_request_{urgency}",
        template_params=build_template_params(request, donor),
        message=format_blood_request_message(request, donor),
        metadata={
            "request_id": request.request_id,
            "donor_id": donor.donor_id,
            "distance_km": donor.distance_km,
            "score": donor.score,
            "priority": urgency,
        },
    )


class NotificationDispatcher:
    """Sends the top-ranked donors of a cycle to the notification interface."""

    def __init__(
        self,
        sender,
        config: Optional[MatchingConfig] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        self.sender = sender
        self.config = config or MatchingConfig()
        self.cancel_event = cancel_event or threading.Event()

    def batch_size(self, urgency: str, round_number: int) -> int:
        """
        Number of donors to notify for an urgency and escalation round.

        The base size grows by ``batch_round_increment`` per round and is
        capped at ``max_batch_size``.
        """
        base = self.config.base_batch_sizes.get(_value(urgency), self.config.fallback_batch_size)
        size = base + (max(round_number, 1) - 1) * self.config.batch_round_increment
        return min(size, self.config.max_batch_size)

    def dispatch(
        self,
        scored_donors: Sequence[ScoredDonor],
        request: BloodRequest,
        round_number: int = 1,
        on_batch_complete: Optional[BatchCallback] = None
    ) -> DispatchResult:
        """
        Notify the top-N scored donors in throttled sub-batches.

        Counters move once per sub-batch. A cancelled wait between sub-batches
        leaves them untouched. A transport outage is the one exception: the
        sends that went out before it are reported as a final partial
        sub-batch, since those donors were notified and are not re-sent later
        in the cycle.

        Args:
            scored_donors: Donors sorted by score, highest first
            request: Blood request being matched
            round_number: Escalation round, drives the batch size
            on_batch_complete: Called with ``(successful, failed)`` after each sub-batch

        Returns:
            DispatchResult with success and failure counts

        Raises:
            NotificationServiceUnavailableError: If the transport is down; everything
                sent before the outage has been reported through ``on_batch_complete``
        """
        selected = list(scored_donors[:self.batch_size(request.urgency, round_number)])
        result = DispatchResult()
        sub_size = self.config.sub_batch_size

        with tracer.start_as_current_span("dispatch.batch") as span:
            span.set_attributes({
                "request.id": request.request_id,
                "dispatch.round": round_number,
                "dispatch.selected": len(selected),
            })

            for start in range(0, len(selected), sub_size):
                if start > 0 and self._wait_between_batches():
                    result.cancelled = True
                    logger.warning(
                        "Dispatch cancelled between sub-batches",
                        extra={"extra_fields": {
                            "request_id": request.request_id,
                            "sent": result.attempted,
                            "remaining": len(selected) - start
                        }}
                    )
                    break

                sub_batch = selected[start:start + sub_size]
                successful, failed = self._send_sub_batch(sub_batch, request, result, on_batch_complete)
                result.successful += successful
                result.failed += failed
                result.attempted += len(sub_batch)
                result.sub_batches += 1
                if on_batch_complete:
                    on_batch_complete(successful, failed)

            span.set_attributes({
                "dispatch.successful": result.successful,
                "dispatch.failed": result.failed,
                "dispatch.cancelled": result.cancelled,
            })

        logger.info(
            f"Sent notifications to {result.successful}/{len(selected)} donors",
            extra={"extra_fields": {
                "request_id": request.request_id,
                "round": round_number,
                "failed": result.failed
            }}
        )
        return result

    def _wait_between_batches(self) -> bool:
        """Sleep the inter-batch delay; True if cancelled meanwhile."""
        delay = self.config.inter_batch_delay_seconds
        if delay <= 0:
            return self.cancel_event.is_set()
        return self.cancel_event.wait(delay)

    def _send_sub_batch(
        self,
        sub_batch: Sequence[ScoredDonor],
        request: BloodRequest,
        result: DispatchResult,
        on_batch_complete: Optional[BatchCallback]
    ):
        successful = 0
        failed = 0

        for donor in sub_batch:
            notification = build_notification(request, donor)
            try:
                outcome = self.sender.send(
                    notification.donor_id,
                    notification.channel_preferences,
                    notification.message_template,
                    notification.template_params,
                    message=notification.message,
                    metadata=notification.metadata,
                )
            except NotificationServiceUnavailableError:
                # Report what already went out before giving up on the cycle
                result.successful += successful
                result.failed += failed
                if on_batch_complete and (successful or failed):
                    on_batch_complete(successful, failed)
                raise
            except Exception as e:
                logger.warning(
                    f"Notification to donor {donor.donor_id} failed: {e}",
                    extra={"extra_fields": {"request_id": request.request_id, "donor_id": donor.donor_id}}
                )
                failed += 1
                continue

            if outcome.success:
                successful += 1
            else:
                failed += 1
                logger.warning(
                    f"Notification to donor {donor.donor_id} was not delivered: {outcome.error}",
                    extra={"extra_fields": {"request_id": request.request_id, "donor_id": donor.donor_id}}
                )

        return successful, failed
