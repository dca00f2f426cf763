# SPDX-License-Identifier: Apache-2.0

"""
Matching administration endpoints.

Start and stop matching for a blood request, inspect a running process,
record donor responses and read scheduler statistics.
"""

from flask import current_app, jsonify
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from ..domain.matching import (
    build_process_hal_response,
    build_statistics_hal_response,
    completion_reason_for_status,
)
from ..middleware.error_handler import ConflictException, NotFoundException
from ..models.requests import DonorResponseRequest, MatchingPath, StartMatchingRequest

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

matching_tag = Tag(name="Matching", description="Donor matching administration")
matching_bp = APIBlueprint(
    'matching',
    __name__,
    url_prefix='/api/matching',
    abp_tags=[matching_tag]
)


def _base_url() -> str:
    return current_app.config['BASE_URL']


@matching_bp.post('')
def start_matching(body: StartMatchingRequest):
    """
    Start donor matching for a blood request.

    Runs the first matching cycle before responding.
    """
    blood_request = current_app.request_store.get_request(body.request_id)
    if blood_request is None:
        raise NotFoundException(f"Blood request not found: {body.request_id}")

    if completion_reason_for_status(blood_request.status) is not None:
        raise ConflictException(
            f"Blood request {body.request_id} is {blood_request.status} and cannot be matched"
        )

    scheduler = current_app.scheduler
    matching_id = scheduler.start_matching(blood_request)
    process = scheduler.get_process(body.request_id, include_completed=True)

    logger.info(
        f"Matching started via API for request: {body.request_id}",
        extra={"extra_fields": {"matching_id": matching_id}}
    )
    return jsonify(build_process_hal_response(process, _base_url())), 201


@matching_bp.get('/statistics')
def get_statistics():
    """Get matching scheduler statistics."""
    statistics = current_app.scheduler.get_statistics()
    return jsonify(build_statistics_hal_response(statistics.to_dict(), _base_url()))


@matching_bp.get('/<request_id>')
def get_matching_process(path: MatchingPath):
    """Get the active matching process of a blood request."""
    process = current_app.scheduler.get_process(path.request_id)
    if process is None:
        raise NotFoundException(f"No active matching for request: {path.request_id}")
    return jsonify(build_process_hal_response(process, _base_url()))


@matching_bp.delete('/<request_id>')
def stop_matching(path: MatchingPath):
    """Stop matching for a blood request."""
    if not current_app.scheduler.stop_matching(path.request_id):
        raise NotFoundException(f"No active matching for request: {path.request_id}")

    return jsonify({
        "stopped": True,
        "request_id": path.request_id,
        "_links": {
            "statistics": {"href": f"{_base_url().rstrip('/')}/api/matching/statistics"}
        }
    })


@matching_bp.post('/<request_id>/responses')
def record_donor_response(path: MatchingPath, body: DonorResponseRequest):
    """Record a donor's answer to a blood request notification."""
    recorded = current_app.scheduler.record_response(path.request_id, body.donor_id, body.accepted)
    if not recorded:
        raise NotFoundException(f"No active matching for request: {path.request_id}")

    # The process may have completed since the response was recorded
    process = current_app.scheduler.get_process(path.request_id, include_completed=True)
    if process is None:
        raise NotFoundException(f"No matching process for request: {path.request_id}")
    return jsonify(build_process_hal_response(process, _base_url()))
