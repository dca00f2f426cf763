# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Base models with common configuration and identifier helpers.
"""

import random
import string
import time
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


_BASE36 = string.digits + string.ascii_lowercase


def generate_matching_id() -> str:
    """Generate a matching process identifier, e.g. ``match_1718000000000_k3j9qz``."""
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"match_{int(time.time() * 1000)}_{suffix}"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class DomainModel(BaseModel):
    """Base model for the matching core's value objects and entities."""

    model_config = ConfigDict(
        # Allow population by field name or alias
        populate_by_name=True,
        # Use enum values instead of enum objects
        use_enum_values=True,
        # Validate assignment
        validate_assignment=True,
    )


def as_utc(value):
    """Normalise a datetime to timezone-aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
