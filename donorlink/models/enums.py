# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Enumeration types for the donor-matching service.
"""

from enum import Enum


class BloodType(str, Enum):
    """ABO/Rh blood types."""
    O_NEGATIVE = "O-"
    O_POSITIVE = "O+"
    A_NEGATIVE = "A-"
    A_POSITIVE = "A+"
    B_NEGATIVE = "B-"
    B_POSITIVE = "B+"
    AB_NEGATIVE = "AB-"
    AB_POSITIVE = "AB+"


class Urgency(str, Enum):
    """Blood request urgency levels."""
    CRITICAL = "critical"
    URGENT = "urgent"
    SCHEDULED = "scheduled"


class RequestStatus(str, Enum):
    """Status of the external blood request record."""
    PENDING = "pending"
    ACTIVE = "active"
    MATCHED = "matched"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class MatchingStatus(str, Enum):
    """Matching process lifecycle status."""
    ACTIVE = "active"
    COMPLETED = "completed"


class CompletionReason(str, Enum):
    """Why a matching process reached the completed state."""
    FULFILLED = "fulfilled"
    NO_DONORS_FOUND = "no_donors_found"
    RADIUS_EXHAUSTED = "radius_exhausted"
    MANUALLY_STOPPED = "manually_stopped"
    EXPIRED = "expired"
    ERROR = "error"


class NotificationChannel(str, Enum):
    """Delivery channels understood by the notification interface."""
    PUSH = "push"
    WHATSAPP = "whatsapp"
    SMS = "sms"
