"""
Health Check Service

Reports on MongoDB, the AMQP broker, the matching scheduler and basic
system metrics.
"""

import os
import time
import psutil
from typing import Dict, Any, List
from opentelemetry import trace

from .. import __version__
from ..models.base import utcnow

tracer = trace.get_tracer(__name__)


def _timestamp() -> str:
    return utcnow().isoformat().replace("+00:00", "Z")


class HealthCheckService:
    """Service for system health monitoring."""

    def __init__(self, mongodb_service, notification_sender, scheduler):
        self.mongodb_service = mongodb_service
        self.notification_sender = notification_sender
        self.scheduler = scheduler
        self.service_version = os.getenv('SERVICE_VERSION', __version__)

    def get_comprehensive_health(self) -> Dict[str, Any]:
        """Get health status including all dependencies and metrics."""
        with tracer.start_as_current_span("health.comprehensive_check") as span:
            start_time = time.time()

            mongodb_health = self._check_mongodb_health()
            amqp_health = self._check_amqp_health()
            scheduler_health = self._check_scheduler_health()

            overall_status = self._determine_overall_status([
                mongodb_health["status"],
                amqp_health["status"],
                scheduler_health["status"]
            ])

            response_time_ms = round((time.time() - start_time) * 1000, 2)

            health_data = {
                "status": overall_status,
                "service": "donorlink-matching",
                "version": self.service_version,
                "environment": os.getenv('ENVIRONMENT', 'development'),
                "timestamp": _timestamp(),
                "response_time_ms": response_time_ms,
                "dependencies": {
                    "mongodb": mongodb_health,
                    "amqp": amqp_health
                },
                "scheduler": scheduler_health,
                "system_metrics": self._get_system_metrics()
            }

            span.set_attributes({
                "health.overall_status": overall_status,
                "health.response_time_ms": response_time_ms,
                "health.mongodb_status": mongodb_health["status"],
                "health.amqp_status": amqp_health["status"],
                "health.scheduler_status": scheduler_health["status"]
            })

            return health_data

    def _check_mongodb_health(self) -> Dict[str, Any]:
        with tracer.start_as_current_span("health.mongodb_check") as span:
            start_time = time.time()
            health_info = dict(self.mongodb_service.health_check())
            health_info["response_time_ms"] = round((time.time() - start_time) * 1000, 2)
            health_info["last_check"] = _timestamp()
            span.set_attribute("mongodb.status", health_info["status"])
            return health_info

    def _check_amqp_health(self) -> Dict[str, Any]:
        with tracer.start_as_current_span("health.amqp_check") as span:
            start_time = time.time()
            health_info = dict(self.notification_sender.health_check())
            health_info["response_time_ms"] = round((time.time() - start_time) * 1000, 2)
            health_info["last_check"] = _timestamp()
            span.set_attribute("amqp.status", health_info["status"])
            return health_info

    def _check_scheduler_health(self) -> Dict[str, Any]:
        """A stopped sweep is unhealthy; processes stuck on repeated faults make it degraded."""
        statistics = self.scheduler.get_statistics()
        running = self.scheduler.is_running()

        if not running:
            status = "unhealthy"
        elif statistics.faulted_processes:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "running": running,
            "active_processes": statistics.active_processes,
            "faulted_processes": statistics.faulted_processes,
            "cycle_faults": statistics.cycle_faults,
            "last_sweep_at": statistics.last_sweep_at.isoformat() if statistics.last_sweep_at else None
        }

    def _get_system_metrics(self) -> Dict[str, Any]:
        """Get basic system performance metrics."""
        try:
            cpu_percent = psutil.cpu_percent(interval=0.1)

            memory = psutil.virtual_memory()
            disk = psutil.disk_usage('/')

            return {
                "cpu_percent": cpu_percent,
                "memory": {
                    "used_mb": round(memory.used / 1024 / 1024, 2),
                    "total_mb": round(memory.total / 1024 / 1024, 2),
                    "percent": memory.percent
                },
                "disk": {
                    "used_gb": round(disk.used / 1024 / 1024 / 1024, 2),
                    "total_gb": round(disk.total / 1024 / 1024 / 1024, 2),
                    "percent": round((disk.used / disk.total) * 100, 2)
                },
                "load_average": list(os.getloadavg()) if hasattr(os, 'getloadavg') else None
            }
        except Exception as e:
            return {
                "error": f"Failed to collect system metrics: {str(e)}"
            }

    def _determine_overall_status(self, statuses: List[str]) -> str:
        """Determine overall system status from component statuses."""
        if all(status == "healthy" for status in statuses):
            return "healthy"
        elif any(status in ("healthy", "degraded") for status in statuses):
            return "degraded"
        else:
            return "unhealthy"
