# SPDX-License-Identifier: Apache-2.0

"""
Donor ranking for a matching cycle.

Scores are points, not probabilities: distance, blood-type fit, donation
history, availability, past responsiveness and request urgency each add
to a single integer per donor.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

from opentelemetry import trace

from ..config import ScoringConfig
from ..models.entities import BloodRequest, DonorCandidate, ScoredDonor
from .compatibility import UNIVERSAL_DONOR, is_compatible, normalize_blood_type
from .geo import haversine_km

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up."""
    return int(math.floor(value + 0.5))


def distance_score(distance_km: float, config: ScoringConfig) -> float:
    return max(0.0, config.distance_base - config.distance_penalty_per_km * distance_km)


def compatibility_score(donor_type: str, recipient_type: str, config: ScoringConfig) -> int:
    """Exact match beats the universal donor, which beats any other compatible type."""
    donor_type = normalize_blood_type(donor_type)
    recipient_type = normalize_blood_type(recipient_type)

    if donor_type == recipient_type:
        return config.exact_match
    if donor_type == UNIVERSAL_DONOR:
        return config.universal_donor
    if is_compatible(donor_type, recipient_type):
        return config.compatible
    return config.incompatible


def history_score(donation_count: int, config: ScoringConfig) -> int:
    return min(config.history_per_donation * donation_count, config.history_cap)


def urgency_bonus(urgency: str, config: ScoringConfig) -> int:
    return config.urgency_bonus.get(getattr(urgency, "value", urgency), 0)


def score_breakdown(
    candidate: DonorCandidate,
    request: BloodRequest,
    distance_km: float,
    config: ScoringConfig
) -> Dict[str, float]:
    """Points contributed by each signal for one donor."""
    return {
        "distance": distance_score(distance_km, config),
        "compatibility": compatibility_score(candidate.blood_type, request.patient_blood_type, config),
        "history": history_score(candidate.historical_donation_count, config),
        "availability": config.availability if candidate.is_available else 0,
        "response_rate": config.response_rate_weight * candidate.historical_response_rate,
        "urgency": urgency_bonus(request.urgency, config),
    }


class ScoringEngine:
    """Ranks eligible donors for a blood request."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def score_donor(self, candidate: DonorCandidate, request: BloodRequest) -> ScoredDonor:
        distance_km = haversine_km(
            request.hospital.coordinates.as_tuple(),
            candidate.coordinates.as_tuple()
        )
        breakdown = score_breakdown(candidate, request, distance_km, self.config)

        return ScoredDonor(
            **candidate.model_dump(),
            distance_km=distance_km,
            score=round_half_up(sum(breakdown.values())),
            score_breakdown=breakdown,
        )

    def score(self, candidates: Sequence[DonorCandidate], request: BloodRequest) -> List[ScoredDonor]:
        """
        Score and sort donors, highest first.

        Equal scores keep their input order, so identical inputs always
        produce identical rankings.
        """
        with tracer.start_as_current_span("scoring.score") as span:
            scored = [self.score_donor(candidate, request) for candidate in candidates]
            scored.sort(key=lambda donor: donor.score, reverse=True)

            span.set_attributes({
                "request.id": request.request_id,
                "scoring.count": len(scored),
                "scoring.top_score": scored[0].score if scored else 0,
            })

        if scored:
            logger.debug(
                f"Scored {len(scored)} donors, top score: {scored[0].score}",
                extra={"extra_fields": {"request_id": request.request_id}}
            )
        return scored
