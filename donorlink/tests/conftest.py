# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and fixtures.

The matching core is exercised against in-memory fakes of the donor
repository, the blood request store and the notification interface,
driven by a frozen clock.
"""

import os
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import Mock

from donorlink.app import create_app
from donorlink.config import MatchingConfig
from donorlink.models.entities import (
    BloodRequest,
    Coordinates,
    DonorCandidate,
    Hospital,
    MatchingCounters,
)
from donorlink.services.dispatcher import SendResult
from donorlink.services.scheduler import EscalationScheduler

# Set test environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['SCHEDULER_AUTOSTART'] = 'false'

HOSPITAL_LON = 78.40
HOSPITAL_LAT = 17.44
# Kilometres per degree of latitude on a 6371 km sphere
KM_PER_DEGREE = 111.19492664455873


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDonorRepository:
    """Returns the configured donors whose blood type was asked for."""

    def __init__(self, donors: Optional[List[DonorCandidate]] = None):
        self.donors = list(donors or [])
        self.calls: List[Dict] = []
        self.error: Optional[Exception] = None

    def query_eligible_donors(self, blood_types, center, radius_km, excluded_ids, limit):
        self.calls.append({
            "blood_types": list(blood_types),
            "center": center,
            "radius_km": radius_km,
            "excluded_ids": list(excluded_ids),
            "limit": limit,
        })
        if self.error is not None:
            raise self.error
        return [donor for donor in self.donors if donor.blood_type in blood_types][:limit]


class FakeRequestStore:
    """In-memory blood request store recording every counter write."""

    def __init__(self):
        self.requests: Dict[str, BloodRequest] = {}
        self.statuses: Dict[str, str] = {}
        self.counter_writes: List[tuple] = []
        self.error: Optional[Exception] = None

    def add(self, request: BloodRequest, status: str = "active") -> None:
        self.requests[request.request_id] = request
        self.statuses[request.request_id] = status

    def get_request(self, request_id: str) -> Optional[BloodRequest]:
        if self.error is not None:
            raise self.error
        return self.requests.get(request_id)

    def get_request_status(self, request_id: str) -> Optional[str]:
        if self.error is not None:
            raise self.error
        return self.statuses.get(request_id)

    def update_matching_counters(self, request_id: str, counters: MatchingCounters) -> None:
        if self.error is not None:
            raise self.error
        self.counter_writes.append((request_id, counters))

    def last_counters(self, request_id: str) -> Optional[MatchingCounters]:
        for written_id, counters in reversed(self.counter_writes):
            if written_id == request_id:
                return counters
        return None


class FakeSender:
    """Notification interface that records sends and fails on demand."""

    def __init__(self):
        self.sent: List[Dict] = []
        self.fail_ids = set()
        self.raise_for: Dict[str, Exception] = {}
        self.on_send = None

    def send(self, donor_id, channel_preferences, message_template, template_params,
             message=None, metadata=None):
        if self.on_send is not None:
            self.on_send(donor_id)
        if donor_id in self.raise_for:
            raise self.raise_for[donor_id]
        self.sent.append({
            "donor_id": donor_id,
            "channels": list(channel_preferences),
            "template": message_template,
            "params": list(template_params),
            "message": message,
            "metadata": metadata or {},
        })
        if donor_id in self.fail_ids:
            return SendResult(success=False, error="delivery failed")
        return SendResult(success=True, message_id=f"msg-{donor_id}")

    @property
    def donor_ids(self) -> List[str]:
        return [entry["donor_id"] for entry in self.sent]

    def health_check(self) -> Dict:
        return {"status": "healthy", "exchange": "test"}


@pytest.fixture
def now():
    """Noon UTC, a fixed point in time for every test."""
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FrozenClock(now)


@pytest.fixture
def matching_config():
    """Default matching configuration without inter-batch waits."""
    return MatchingConfig(inter_batch_delay_seconds=0)


@pytest.fixture
def hospital():
    return Hospital(
        name="Apollo Hospital",
        coordinates=Coordinates(longitude=HOSPITAL_LON, latitude=HOSPITAL_LAT),
        contact_number="9876543210",
        city="Hyderabad",
        state="Telangana",
    )


@pytest.fixture
def make_request(hospital, now):
    """Factory for blood requests at the test hospital."""
    def _make(request_id: str = "BR1001", **overrides) -> BloodRequest:
        fields = {
            "request_id": request_id,
            "patient_blood_type": "O+",
            "patient_name": "Ravi Kumar",
            "patient_age": 42,
            "hospital": hospital,
            "urgency": "critical",
            "units_needed": 2,
            "search_radius_km": 15,
            "created_at": now,
        }
        fields.update(overrides)
        return BloodRequest(**fields)
    return _make


@pytest.fixture
def make_donor():
    """Factory for donors placed ``km_north`` kilometres due north of the hospital."""
    def _make(donor_id: str, km_north: float = 1.0, blood_type: str = "O-", **overrides) -> DonorCandidate:
        fields = {
            "donor_id": donor_id,
            "name": f"Donor {donor_id}",
            "blood_type": blood_type,
            "coordinates": Coordinates(
                longitude=HOSPITAL_LON,
                latitude=HOSPITAL_LAT + km_north / KM_PER_DEGREE,
            ),
        }
        fields.update(overrides)
        return DonorCandidate(**fields)
    return _make


@pytest.fixture
def donor_repository():
    return FakeDonorRepository()


@pytest.fixture
def request_store():
    return FakeRequestStore()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def scheduler(donor_repository, request_store, sender, matching_config, clock):
    """Escalation scheduler wired to the fakes; its sweep thread is never started."""
    scheduler = EscalationScheduler(
        donor_repository=donor_repository,
        request_store=request_store,
        sender=sender,
        config=matching_config,
        clock=clock,
    )
    yield scheduler
    scheduler.shutdown(wait=True, timeout=1)


@pytest.fixture
def mock_mongodb_service():
    """MongoDB service double reporting a healthy server."""
    service = Mock()
    service.health_check.return_value = {"status": "healthy", "ping": True, "database": "donorlink_test"}
    return service


@pytest.fixture
def app(mock_mongodb_service, sender, scheduler, request_store, matching_config):
    """Flask app wired to the fakes, with the sweep thread stopped."""
    app = create_app(
        mongodb_service=mock_mongodb_service,
        notification_sender=sender,
        scheduler=scheduler,
        request_store=request_store,
        matching_config=matching_config,
        autostart=False
    )
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
