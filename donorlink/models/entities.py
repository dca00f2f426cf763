# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Core entity models for the donor-matching service.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import Field, field_validator, model_validator

from ..domain.compatibility import normalize_blood_type
from ..domain.geo import validate_coordinates
from ..exceptions import InvalidTransitionError
from .base import DomainModel, as_utc, generate_matching_id, utcnow
from .enums import (
    CompletionReason,
    MatchingStatus,
    NotificationChannel,
    RequestStatus,
    Urgency,
)


class Coordinates(DomainModel):
    """A GeoJSON-ordered point: longitude first, then latitude."""

    longitude: float = Field(..., description="Longitude in degrees")
    latitude: float = Field(..., description="Latitude in degrees")

    @model_validator(mode='after')
    def validate_range(self):
        """Validate longitude/latitude ranges."""
        validate_coordinates(self.longitude, self.latitude)
        return self

    @classmethod
    def from_pair(cls, pair) -> "Coordinates":
        """Build from a ``[longitude, latitude]`` sequence."""
        return cls(longitude=pair[0], latitude=pair[1])

    def as_tuple(self) -> Tuple[float, float]:
        return (self.longitude, self.latitude)

    def to_geojson(self) -> Dict[str, object]:
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}


class NotificationWindow(DomainModel):
    """Hours of the day a donor agreed to be contacted, inclusive on both ends."""

    start_hour: int = Field(..., ge=0, le=23, description="First hour notifications are allowed")
    end_hour: int = Field(..., ge=0, le=23, description="Last hour notifications are allowed")

    def contains(self, hour: int) -> bool:
        """Check whether ``hour`` falls inside the window; windows may wrap past midnight."""
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


class Hospital(DomainModel):
    """Hospital where the blood is needed."""

    name: str = Field(..., min_length=1, description="Hospital name")
    coordinates: Coordinates = Field(..., description="Hospital location")
    contact_number: Optional[str] = Field(None, description="Hospital contact number")
    city: Optional[str] = Field(None, description="City")
    state: Optional[str] = Field(None, description="State or region")


class BloodRequest(DomainModel):
    """Projection of an external blood request, as consumed by matching."""

    request_id: str = Field(..., min_length=1, description="External blood request identifier")
    patient_blood_type: str = Field(..., description="Recipient blood type")
    patient_name: Optional[str] = Field(None, description="Patient name")
    patient_age: Optional[int] = Field(None, ge=0, description="Patient age in years")
    hospital: Hospital = Field(..., description="Requesting hospital")
    urgency: Urgency = Field(default=Urgency.URGENT, description="Request urgency")
    units_needed: int = Field(default=1, ge=1, description="Units of blood needed")
    search_radius_km: Optional[float] = Field(None, gt=0, description="Initial search radius")
    responder_ids: List[str] = Field(default_factory=list, description="Donors who already answered")
    status: RequestStatus = Field(default=RequestStatus.ACTIVE, description="External request status")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    expires_at: Optional[datetime] = Field(None, description="Expiry timestamp")

    @field_validator('patient_blood_type')
    @classmethod
    def validate_blood_type(cls, v):
        """Canonicalise the patient blood type."""
        return normalize_blood_type(v)

    @field_validator('created_at', 'expires_at')
    @classmethod
    def validate_timestamps(cls, v):
        return as_utc(v)

    def is_expired(self, now: datetime) -> bool:
        """Check if the request has passed its expiry time."""
        if self.status == RequestStatus.EXPIRED:
            return True
        return self.expires_at is not None and as_utc(now) >= self.expires_at


class DonorCandidate(DomainModel):
    """Read-only projection of a donor from the donor repository."""

    donor_id: str = Field(..., min_length=1, description="Donor identifier")
    name: Optional[str] = Field(None, description="Donor display name")
    blood_type: str = Field(..., description="Donor blood type")
    coordinates: Coordinates = Field(..., description="Donor location")
    last_donation_at: Optional[datetime] = Field(None, description="Most recent donation")
    is_available: bool = Field(default=True, description="Donor marked themselves available")
    is_active: bool = Field(default=True, description="Account is active")
    medically_cleared: bool = Field(default=True, description="Medical clearance granted")
    notification_window: Optional[NotificationWindow] = Field(None, description="Preferred contact hours")
    historical_donation_count: int = Field(default=0, ge=0, description="Total past donations")
    historical_response_rate: float = Field(default=0.0, ge=0.0, le=1.0, description="Past response rate")
    phone_number: Optional[str] = Field(None, description="Phone number")
    email: Optional[str] = Field(None, description="Email address")
    preferred_channel: NotificationChannel = Field(
        default=NotificationChannel.WHATSAPP, description="Preferred notification channel"
    )

    @field_validator('blood_type')
    @classmethod
    def validate_blood_type(cls, v):
        return normalize_blood_type(v)

    @field_validator('last_donation_at')
    @classmethod
    def validate_last_donation(cls, v):
        return as_utc(v)


class ScoredDonor(DonorCandidate):
    """A donor candidate ranked for one matching cycle."""

    distance_km: float = Field(..., ge=0, description="Distance to the hospital")
    score: int = Field(..., description="Total ranking score")
    score_breakdown: Dict[str, float] = Field(default_factory=dict, description="Points per signal")


class MatchingProcess(DomainModel):
    """Per-request escalation state owned by the matching core."""

    id: str = Field(default_factory=generate_matching_id, description="Matching process identifier")
    request_id: str = Field(..., description="External blood request identifier")
    request: BloodRequest = Field(..., description="Blood request being matched")
    current_radius_km: float = Field(..., gt=0, description="Current search radius")
    round: int = Field(default=1, ge=1, description="Notification round")
    total_notified: int = Field(default=0, ge=0, description="Successful notifications")
    total_failed: int = Field(default=0, ge=0, description="Failed notifications")
    notified_round: int = Field(default=0, ge=0, description="Last round that reached a donor")
    notified_radius_km: Optional[float] = Field(None, gt=0, description="Search radius of that round")
    total_responded: int = Field(default=0, ge=0, description="Donor responses received")
    positive_responses: int = Field(default=0, ge=0, description="Accepting responses")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    last_notification_at: Optional[datetime] = Field(None, description="Most recent dispatch")
    next_escalation_at: datetime = Field(default_factory=utcnow, description="Escalation gate")
    status: MatchingStatus = Field(default=MatchingStatus.ACTIVE, description="Lifecycle status")
    completion_reason: Optional[CompletionReason] = Field(None, description="Why matching ended")
    completed_at: Optional[datetime] = Field(None, description="Completion timestamp")
    final_round: bool = Field(default=False, description="Last round at the maximum radius was sent")
    consecutive_faults: int = Field(default=0, ge=0, description="Recoverable faults since last good cycle")

    @field_validator('created_at', 'last_notification_at', 'next_escalation_at', 'completed_at')
    @classmethod
    def validate_timestamps(cls, v):
        return as_utc(v)

    @model_validator(mode='after')
    def validate_request_ref(self):
        """The process must point at the request it was created for."""
        if self.request.request_id != self.request_id:
            raise ValueError('request_id must match request.request_id')
        return self

    def is_active(self) -> bool:
        return self.status == MatchingStatus.ACTIVE

    def is_completed(self) -> bool:
        return self.status == MatchingStatus.COMPLETED

    def is_due(self, now: datetime) -> bool:
        """Check if the escalation gate has opened."""
        return self.is_active() and as_utc(now) >= self.next_escalation_at

    def escalate(self, increment_km: float, max_radius_km: float) -> bool:
        """
        Widen the search radius by one step and advance the round.

        Returns:
            False if the radius is already at its maximum, True otherwise
        """
        self._require_active("escalate")
        if self.current_radius_km >= max_radius_km:
            return False
        self.current_radius_km = min(self.current_radius_km + increment_km, max_radius_km)
        self.round += 1
        return True

    def schedule_next(self, now: datetime, delay: timedelta) -> None:
        """Close the escalation gate until ``now + delay``."""
        self._require_active("schedule")
        self.next_escalation_at = as_utc(now) + delay

    def record_dispatch(self, successful: int, failed: int, at: datetime) -> None:
        """Add one completed sub-batch to the notification counters."""
        self.total_notified += successful
        self.total_failed += failed
        if successful or failed:
            self.last_notification_at = as_utc(at)
        if successful:
            self.notified_round = self.round
            self.notified_radius_km = self.current_radius_km

    def record_response(self, donor_id: str, accepted: bool) -> None:
        """Count a donor response and stop re-notifying that donor."""
        self.total_responded += 1
        if accepted:
            self.positive_responses += 1
        if donor_id not in self.request.responder_ids:
            self.request.responder_ids = self.request.responder_ids + [donor_id]

    def complete(self, reason: CompletionReason, at: datetime) -> None:
        """
        Move the process to the terminal completed state.

        Raises:
            InvalidTransitionError: If the process is already completed
        """
        if self.is_completed():
            raise InvalidTransitionError(self.status, MatchingStatus.COMPLETED.value, self.id)
        self.status = MatchingStatus.COMPLETED
        self.completion_reason = reason
        self.completed_at = as_utc(at)

    def _require_active(self, action: str) -> None:
        if not self.is_active():
            raise InvalidTransitionError(self.status, f"{MatchingStatus.ACTIVE.value} ({action})", self.id)


@dataclass
class MatchingCounters:
    """Counters written back to the external blood request record."""
    total_notified: int
    last_notification_sent: Optional[datetime]
    notification_rounds: int
    current_radius: float

    @classmethod
    def from_process(cls, process: MatchingProcess) -> "MatchingCounters":
        """Report the last round that was sent, not the one scheduled next."""
        radius = process.notified_radius_km
        return cls(
            total_notified=process.total_notified,
            last_notification_sent=process.last_notification_at,
            notification_rounds=process.notified_round,
            current_radius=radius if radius is not None else process.current_radius_km,
        )
