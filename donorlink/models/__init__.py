# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Data models for the donor-matching service.

This package contains Pydantic models for the matching process, the
request and donor projections it consumes, and HTTP request bodies.
"""

from .enums import (
    BloodType,
    CompletionReason,
    MatchingStatus,
    NotificationChannel,
    RequestStatus,
    Urgency,
)
from .base import DomainModel, generate_matching_id, utcnow
from .entities import (
    BloodRequest,
    Coordinates,
    DonorCandidate,
    Hospital,
    MatchingCounters,
    MatchingProcess,
    NotificationWindow,
    ScoredDonor,
)

__all__ = [
    # Enums
    "BloodType",
    "CompletionReason",
    "MatchingStatus",
    "NotificationChannel",
    "RequestStatus",
    "Urgency",

    # Base
    "DomainModel",
    "generate_matching_id",
    "utcnow",

    # Entities
    "BloodRequest",
    "Coordinates",
    "DonorCandidate",
    "Hospital",
    "MatchingCounters",
    "MatchingProcess",
    "NotificationWindow",
    "ScoredDonor",
]
