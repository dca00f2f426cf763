# SPDX-License-Identifier: Apache-2.0

"""
Matching process domain logic.

This module contains pure functions for request expiry, terminal
request statuses and HAL response transformation.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..models.base import as_utc
from ..models.entities import BloodRequest, MatchingProcess
from ..models.enums import CompletionReason, MatchingStatus, RequestStatus


# Store statuses that end matching, and the completion reason each maps to.
TERMINAL_REQUEST_STATUSES: Dict[str, CompletionReason] = {
    RequestStatus.FULFILLED.value: CompletionReason.FULFILLED,
    RequestStatus.EXPIRED.value: CompletionReason.EXPIRED,
    RequestStatus.CANCELLED.value: CompletionReason.MANUALLY_STOPPED,
}


def completion_reason_for_status(status: Optional[str]) -> Optional[CompletionReason]:
    """Map an external request status to a completion reason, or None if matching continues."""
    if status is None:
        return None
    return TERMINAL_REQUEST_STATUSES.get(getattr(status, "value", status))


def default_expiry(request: BloodRequest, ttl_hours: Dict[str, int]) -> Optional[datetime]:
    """Expiry derived from urgency when the request does not carry one."""
    if request.expires_at is not None:
        return request.expires_at
    hours = ttl_hours.get(getattr(request.urgency, "value", request.urgency))
    if hours is None:
        return None
    return request.created_at + timedelta(hours=hours)


def initial_radius(request: BloodRequest, default_radius_km: float, max_radius_km: float) -> float:
    """Starting radius for a new process, never beyond the maximum."""
    radius = request.search_radius_km or default_radius_km
    return min(radius, max_radius_km)


def build_process_hal_response(process: MatchingProcess, base_url: str) -> Dict[str, Any]:
    """
    Build HAL response for a matching process with affordance links.

    Args:
        process: Matching process snapshot
        base_url: Base URL for link generation

    Returns:
        HAL-formatted response dictionary
    """
    base_url = base_url.rstrip('/')
    process_url = f"{base_url}/api/matching/{process.request_id}"

    response = {
        "id": process.id,
        "request_id": process.request_id,
        "status": process.status,
        "current_radius_km": process.current_radius_km,
        "round": process.round,
        "total_notified": process.total_notified,
        "total_failed": process.total_failed,
        "total_responded": process.total_responded,
        "positive_responses": process.positive_responses,
        "created_at": _isoformat(process.created_at),
        "last_notification_at": _isoformat(process.last_notification_at),
        "next_escalation_at": _isoformat(process.next_escalation_at),
        "_links": {
            "self": {"href": process_url},
            "statistics": {"href": f"{base_url}/api/matching/statistics"}
        }
    }

    if process.status == MatchingStatus.COMPLETED:
        response.update({
            "completion_reason": process.completion_reason,
            "completed_at": _isoformat(process.completed_at)
        })
        return response

    links = response["_links"]
    links["stop"] = {
        "href": process_url,
        "method": "DELETE"
    }
    links["responses"] = {
        "href": f"{process_url}/responses",
        "method": "POST",
        "type": "application/json"
    }
    return response


def build_statistics_hal_response(statistics: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    """Wrap a statistics document with HAL links."""
    base_url = base_url.rstrip('/')
    response = dict(statistics)
    response["_links"] = {
        "self": {"href": f"{base_url}/api/matching/statistics"},
        "start": {
            "href": f"{base_url}/api/matching",
            "method": "POST",
            "type": "application/json"
        }
    }
    return response


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None
