# SPDX-License-Identifier: Apache-2.0

"""
Tests for the MongoDB donor repository and blood request store.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from bson import ObjectId
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from donorlink.exceptions import RepositoryUnavailableError
from donorlink.models.entities import Coordinates, MatchingCounters
from donorlink.services.repositories import (
    MongoBloodRequestStore,
    MongoDonorRepository,
    donor_from_document,
    request_from_document,
)

DONOR_ID = "665f1c2a9b1e8a3d4c5b6a71"


@pytest.fixture
def collection():
    return Mock()


@pytest.fixture
def mongodb_service(collection):
    service = Mock()
    service.get_collection.return_value = collection
    return service


@pytest.fixture
def donor_document():
    return {
        "_id": ObjectId(DONOR_ID),
        "name": "Priya Sharma",
        "role": "donor",
        "status": "active",
        "bloodType": "o-",
        "phoneNumber": "+919812345678",
        "location": {"coordinates": {"type": "Point", "coordinates": [78.41, 17.45]}},
        "availability": {"isAvailable": True},
        "verification": {"medicallyCleared": True},
        "donationHistory": {"lastDonationDate": datetime(2024, 1, 10)},
        "stats": {"totalDonations": 6, "responseRate": 80},
        "preferences": {
            "notificationHours": {"start": "08:00", "end": "21:00"},
            "notificationMethods": {"whatsapp": False, "push": False, "sms": True},
        },
    }


@pytest.fixture
def request_document():
    return {
        "requestId": "BR1001",
        "status": "active",
        "patient": {"name": "Ravi Kumar", "age": 42, "bloodType": "O+"},
        "request": {"urgency": "critical", "unitsNeeded": 3},
        "location": {
            "hospital": {
                "name": "Apollo Hospital",
                "contactNumber": "9876543210",
                "address": {"city": "Hyderabad", "state": "Telangana"},
                "coordinates": {"type": "Point", "coordinates": [78.40, 17.44]},
            },
            "searchRadius": 20,
        },
        "matching": {"matchedDonors": [{"donorId": ObjectId(DONOR_ID)}, {"status": "pending"}]},
        "createdAt": datetime(2024, 6, 1, 11, 30),
    }


class TestDocumentConversion:
    """Test translation of stored documents into domain models."""

    def test_donor_from_document(self, donor_document):
        donor = donor_from_document(donor_document)

        assert donor.donor_id == DONOR_ID
        assert donor.blood_type == "O-"
        assert donor.coordinates.as_tuple() == (78.41, 17.45)
        assert donor.last_donation_at == datetime(2024, 1, 10, tzinfo=timezone.utc)
        assert donor.historical_donation_count == 6
        assert donor.historical_response_rate == pytest.approx(0.8)
        assert donor.notification_window.start_hour == 8
        assert donor.notification_window.end_hour == 21
        assert donor.preferred_channel == "sms"
        assert donor.medically_cleared

    def test_donor_defaults(self, donor_document):
        for key in ("donationHistory", "stats", "preferences"):
            del donor_document[key]

        donor = donor_from_document(donor_document)

        assert donor.last_donation_at is None
        assert donor.notification_window is None
        assert donor.historical_response_rate == 0.0
        assert donor.preferred_channel == "whatsapp"

    def test_last_donation_falls_back_to_medical_info(self, donor_document):
        del donor_document["donationHistory"]
        donor_document["medicalInfo"] = {"lastDonationDate": datetime(2024, 3, 1)}

        assert donor_from_document(donor_document).last_donation_at.month == 3

    def test_request_from_document(self, request_document):
        request = request_from_document(request_document)

        assert request.request_id == "BR1001"
        assert request.patient_blood_type == "O+"
        assert request.urgency == "critical"
        assert request.units_needed == 3
        assert request.search_radius_km == 20
        assert request.hospital.coordinates.as_tuple() == (78.40, 17.44)
        assert request.hospital.city == "Hyderabad"
        assert request.responder_ids == [DONOR_ID]
        assert request.created_at == datetime(2024, 6, 1, 11, 30, tzinfo=timezone.utc)

    def test_request_status_defaults_to_pending(self, request_document):
        del request_document["status"]
        assert request_from_document(request_document).status == "pending"


class TestMongoDonorRepository:
    """Test the geospatial donor query."""

    def setup_method(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        self.center = Coordinates(longitude=78.40, latitude=17.44)

    def test_query_shape(self, mongodb_service):
        repository = MongoDonorRepository(mongodb_service, clock=lambda: self.now)

        query = repository.build_query(["O+", "O-"], self.center, 15, [DONOR_ID, "legacy-7"])

        assert query["role"] == "donor"
        assert query["bloodType"] == {"$in": ["O+", "O-"]}
        near = query["location.coordinates"]["$near"]
        assert near["$geometry"] == {"type": "Point", "coordinates": [78.40, 17.44]}
        assert near["$maxDistance"] == 15000
        assert query["_id"] == {"$nin": [ObjectId(DONOR_ID), "legacy-7"]}
        assert {"donationHistory.lastDonationDate": {"$lte": self.now - timedelta(days=90)}} in query["$or"]

    def test_query_eligible_donors(self, mongodb_service, collection, donor_document):
        collection.find.return_value.limit.return_value = [donor_document, {"_id": "broken"}]
        repository = MongoDonorRepository(mongodb_service, clock=lambda: self.now)

        donors = repository.query_eligible_donors(["O+", "O-"], self.center, 25, [], limit=50)

        mongodb_service.get_collection.assert_called_once_with("users")
        collection.find.return_value.limit.assert_called_once_with(50)
        assert [donor.donor_id for donor in donors] == [DONOR_ID]

    @pytest.mark.parametrize("error", [
        ServerSelectionTimeoutError("no servers"),
        OperationFailure("unable to find index for $geoNear query"),
    ])
    def test_outage_is_wrapped(self, mongodb_service, collection, error):
        collection.find.side_effect = error
        repository = MongoDonorRepository(mongodb_service)

        with pytest.raises(RepositoryUnavailableError):
            repository.query_eligible_donors(["O-"], self.center, 15, [], limit=10)


class TestMongoBloodRequestStore:
    """Test request reads and counter write-back."""

    def test_get_request(self, mongodb_service, collection, request_document):
        collection.find_one.return_value = request_document
        store = MongoBloodRequestStore(mongodb_service)

        request = store.get_request("BR1001")

        collection.find_one.assert_called_once_with({"requestId": "BR1001"})
        assert request.patient_name == "Ravi Kumar"

    def test_missing_request(self, mongodb_service, collection):
        collection.find_one.return_value = None
        store = MongoBloodRequestStore(mongodb_service)

        assert store.get_request("BR404") is None
        assert store.get_request_status("BR404") is None

    def test_get_request_status(self, mongodb_service, collection):
        collection.find_one.return_value = {"status": "fulfilled"}
        store = MongoBloodRequestStore(mongodb_service)

        assert store.get_request_status("BR1001") == "fulfilled"
        collection.find_one.assert_called_once_with({"requestId": "BR1001"}, {"status": 1})

    def test_update_matching_counters(self, mongodb_service, collection):
        sent_at = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        store = MongoBloodRequestStore(mongodb_service)

        store.update_matching_counters("BR1001", MatchingCounters(12, sent_at, 2, 25.0))

        collection.update_one.assert_called_once_with(
            {"requestId": "BR1001"},
            {"$set": {
                "matching.totalNotified": 12,
                "matching.lastNotificationSent": sent_at,
                "matching.notificationRounds": 2,
                "matching.currentRadius": 25.0,
            }}
        )

    def test_counter_write_outage_is_wrapped(self, mongodb_service, collection):
        collection.update_one.side_effect = ServerSelectionTimeoutError("no servers")
        store = MongoBloodRequestStore(mongodb_service)

        with pytest.raises(RepositoryUnavailableError):
            store.update_matching_counters("BR1001", MatchingCounters(0, None, 1, 15.0))
