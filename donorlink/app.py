"""
DonorLink Matching API - Flask Application Entry Point

Builds the Flask application with OpenAPI 3.0 support, wires the matching
scheduler to MongoDB and the AMQP notification transport, and registers
the administrative routes.
"""

import atexit
import logging
import os
from typing import Optional

from flask import jsonify, request
from flask_openapi3 import OpenAPI, Info, Tag

from . import __version__
from .config import MatchingConfig, load_matching_config
from .middleware.error_handler import ErrorHandlerMiddleware, build_problem_response
from .observability.config import setup_observability
from .observability.middleware import add_observability_middleware
from .services.amqp import create_notification_sender
from .services.health import HealthCheckService
from .services.mongodb import MongoDBService
from .services.repositories import MongoBloodRequestStore, MongoDonorRepository
from .services.scheduler import EscalationScheduler

logger = logging.getLogger(__name__)

info = Info(
    title="DonorLink Matching API",
    version=__version__,
    description="Emergency blood request matching with escalating donor notifications"
)

tags = [
    Tag(name="Matching", description="Donor matching administration"),
    Tag(name="Health", description="System health and status")
]


def create_app(
    mongodb_service=None,
    notification_sender=None,
    scheduler: Optional[EscalationScheduler] = None,
    request_store=None,
    matching_config: Optional[MatchingConfig] = None,
    autostart: Optional[bool] = None
) -> OpenAPI:
    """
    Create the Flask application.

    Collaborators default to the MongoDB and AMQP implementations
    configured from the environment; tests pass their own.
    """
    base_url = os.getenv('BASE_URL', 'http://localhost:5000')

    def validation_error_callback(error):
        validation_errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in error.errors()
        ]
        return jsonify(build_problem_response(
            base_url, "validation-error", "Validation Error", 422,
            "Request validation failed", request.path, validation_errors
        )), 422

    app = OpenAPI(__name__, info=info, tags=tags, validation_error_callback=validation_error_callback)

    add_observability_middleware(app)

    app.config['ENVIRONMENT'] = os.getenv('ENVIRONMENT', 'development')
    app.config['ENV'] = app.config['ENVIRONMENT']
    app.config['DEBUG'] = app.config['ENVIRONMENT'] == 'development'
    app.config['BASE_URL'] = base_url

    matching_config = matching_config or load_matching_config()
    mongodb_service = mongodb_service or MongoDBService()
    notification_sender = notification_sender or create_notification_sender()
    request_store = request_store or MongoBloodRequestStore(mongodb_service)

    if scheduler is None:
        scheduler = EscalationScheduler(
            donor_repository=MongoDonorRepository(mongodb_service, matching_config.cooldown_days),
            request_store=request_store,
            sender=notification_sender,
            config=matching_config
        )

    ErrorHandlerMiddleware(app, base_url)

    # Make services available to routes
    app.mongodb_service = mongodb_service
    app.notification_sender = notification_sender
    app.request_store = request_store
    app.scheduler = scheduler
    app.health_service = HealthCheckService(mongodb_service, notification_sender, scheduler)

    from .routes.matching import matching_bp
    from .routes.health import health_bp

    app.register_api(matching_bp)
    app.register_api(health_bp)

    if autostart is None:
        autostart = os.getenv('SCHEDULER_AUTOSTART', 'true').lower() == 'true'
    if autostart:
        scheduler.start()
        atexit.register(scheduler.shutdown, wait=False)

    logger.info(
        "DonorLink matching API initialized",
        extra={"extra_fields": {
            "environment": app.config['ENVIRONMENT'],
            "scheduler_running": scheduler.is_running()
        }}
    )
    return app


if __name__ == '__main__':
    setup_observability()
    app = create_app()
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=app.config['DEBUG'],
        use_reloader=False
    )
