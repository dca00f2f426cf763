# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Request models for the matching administration endpoints.
"""

from pydantic import BaseModel, Field, field_validator, ConfigDict


class StartMatchingRequest(BaseModel):
    """Request body for starting donor matching on a blood request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    request_id: str = Field(..., min_length=1, max_length=100, description="Blood request ID")


class DonorResponseRequest(BaseModel):
    """Request body for recording a donor's answer to a notification."""

    model_config = ConfigDict(str_strip_whitespace=True)

    donor_id: str = Field(..., min_length=1, max_length=100, description="Responding donor ID")
    accepted: bool = Field(..., description="Whether the donor agreed to donate")


class MatchingPath(BaseModel):
    """Path parameters addressing a blood request's matching process."""

    request_id: str = Field(..., min_length=1, max_length=100, description="Blood request ID")

    @field_validator('request_id')
    @classmethod
    def validate_request_id(cls, v):
        if not v.strip():
            raise ValueError('Request ID cannot be empty')
        return v.strip()
