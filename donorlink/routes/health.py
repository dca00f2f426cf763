# SPDX-License-Identifier: Apache-2.0

"""
Health endpoint.
"""

from flask import current_app, jsonify
from flask_openapi3 import APIBlueprint, Tag

health_tag = Tag(name="Health", description="System health and status")
health_bp = APIBlueprint('health', __name__, url_prefix='/api', abp_tags=[health_tag])


@health_bp.get('/healthz')
def health_check():
    """Health check covering MongoDB, AMQP and the matching scheduler."""
    health_data = current_app.health_service.get_comprehensive_health()

    # Degraded is still operational
    status_code = 503 if health_data["status"] == "unhealthy" else 200

    base_url = current_app.config['BASE_URL'].rstrip('/')
    health_data["_links"] = {
        "self": {"href": f"{base_url}/api/healthz"},
        "statistics": {"href": f"{base_url}/api/matching/statistics"}
    }
    return jsonify(health_data), status_code
