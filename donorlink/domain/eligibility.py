# SPDX-License-Identifier: Apache-2.0

"""
Donor eligibility rules for a blood request.

The donor repository narrows candidates with an indexed query; every rule
is then re-checked here, in a fixed order, so results never depend on how
faithfully a repository implements the query.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from opentelemetry import trace

from ..config import MatchingConfig
from ..models.base import as_utc, utcnow
from ..models.entities import BloodRequest, DonorCandidate, NotificationWindow
from .compatibility import compatible_donor_types
from .geo import haversine_km

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def is_cooldown_elapsed(
    last_donation_at: Optional[datetime],
    now: datetime,
    cooldown_days: int = 90
) -> bool:
    """
    Check the donation cooldown.

    A donor who donated exactly ``cooldown_days`` ago is eligible again.
    """
    if last_donation_at is None:
        return True
    return as_utc(now) - as_utc(last_donation_at) >= timedelta(days=cooldown_days)


def is_within_notification_hours(window: Optional[NotificationWindow], hour: int) -> bool:
    """Donors without a declared window can always be contacted."""
    if window is None:
        return True
    return window.contains(hour)


def rejection_reason(
    candidate: DonorCandidate,
    request: BloodRequest,
    radius_km: float,
    compatible_types: Sequence[str],
    excluded_ids: Iterable[str],
    now: datetime,
    local_hour: int,
    cooldown_days: int = 90
) -> Optional[str]:
    """
    Apply the eligibility rules in order.

    Returns:
        The name of the first failed rule, or None if the donor is eligible
    """
    if candidate.blood_type not in compatible_types:
        return "blood_type"

    distance = haversine_km(request.hospital.coordinates.as_tuple(), candidate.coordinates.as_tuple())
    if distance > radius_km:
        return "geofence"

    if not (candidate.is_active and candidate.medically_cleared and candidate.is_available):
        return "status"

    if not is_cooldown_elapsed(candidate.last_donation_at, now, cooldown_days):
        return "cooldown"

    if candidate.donor_id in excluded_ids:
        return "already_responded"

    if not is_within_notification_hours(candidate.notification_window, local_hour):
        return "notification_hours"

    return None


class EligibilityFilter:
    """Finds donors who may be notified for a request at a given radius."""

    def __init__(
        self,
        donor_repository,
        config: Optional[MatchingConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.donor_repository = donor_repository
        self.config = config or MatchingConfig()
        self.clock = clock
        self._zone = ZoneInfo(self.config.local_timezone)

    def find_eligible(
        self,
        request: BloodRequest,
        radius_km: float,
        now: Optional[datetime] = None
    ) -> List[DonorCandidate]:
        """
        Find eligible donors for a blood request.

        Args:
            request: Blood request being matched
            radius_km: Geofence radius around the hospital
            now: Evaluation time, defaults to the filter's clock

        Returns:
            Eligible candidates in repository order, capped at ``max_candidates``.
            Empty when nobody qualifies.

        Raises:
            InvalidBloodTypeError: If the request carries an unknown blood type
            RepositoryUnavailableError: If the donor repository cannot be reached
        """
        now = as_utc(now or self.clock())
        compatible_types = compatible_donor_types(request.patient_blood_type)
        excluded_ids = set(request.responder_ids)
        local_hour = now.astimezone(self._zone).hour

        with tracer.start_as_current_span("eligibility.find") as span:
            span.set_attributes({
                "request.id": request.request_id,
                "eligibility.radius_km": radius_km,
                "eligibility.compatible_types": ",".join(compatible_types),
            })

            candidates = list(self.donor_repository.query_eligible_donors(
                compatible_types,
                request.hospital.coordinates,
                radius_km,
                sorted(excluded_ids),
                limit=self.config.max_candidates,
            ))

            eligible: List[DonorCandidate] = []
            for candidate in candidates:
                reason = rejection_reason(
                    candidate,
                    request,
                    radius_km,
                    compatible_types,
                    excluded_ids,
                    now,
                    local_hour,
                    self.config.cooldown_days,
                )
                if reason:
                    logger.debug(
                        f"Donor {candidate.donor_id} rejected: {reason}",
                        extra={"extra_fields": {"request_id": request.request_id, "rule": reason}}
                    )
                    continue

                eligible.append(candidate)
                if len(eligible) >= self.config.max_candidates:
                    break

            span.set_attributes({
                "eligibility.candidates": len(candidates),
                "eligibility.eligible": len(eligible),
            })

        logger.debug(
            f"Found {len(eligible)} eligible donors within {radius_km}km",
            extra={"extra_fields": {"request_id": request.request_id, "radius_km": radius_km}}
        )
        return eligible
