# SPDX-License-Identifier: Apache-2.0

"""
Donor repository and blood request store.

The matching core only talks to the two protocols below. The MongoDB
implementations read the ``users`` and ``bloodrequests`` collections
and translate their camelCase documents into domain models.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from opentelemetry import trace
from pydantic import ValidationError
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

from ..domain.geo import km_to_meters
from ..exceptions import RepositoryUnavailableError
from ..models.base import utcnow
from ..models.entities import (
    BloodRequest,
    Coordinates,
    DonorCandidate,
    Hospital,
    MatchingCounters,
    NotificationWindow,
)
from ..models.enums import NotificationChannel, RequestStatus
from .mongodb import BLOOD_REQUESTS_COLLECTION, USERS_COLLECTION, MongoDBService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MONGO_ERRORS = (ConnectionFailure, ServerSelectionTimeoutError, OperationFailure)


class DonorRepository(Protocol):
    def query_eligible_donors(
        self,
        blood_types: Sequence[str],
        center: Coordinates,
        radius_km: float,
        excluded_ids: Sequence[str],
        limit: int
    ) -> Iterable[DonorCandidate]:
        ...


class BloodRequestStore(Protocol):
    def get_request(self, request_id: str) -> Optional[BloodRequest]:
        ...

    def get_request_status(self, request_id: str) -> Optional[str]:
        ...

    def update_matching_counters(self, request_id: str, counters: MatchingCounters) -> None:
        ...


def _get(document: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path out of a nested document."""
    current: Any = document
    for key in path.split('.'):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def _hour(value: Any) -> Optional[int]:
    """Hours are stored either as integers or as ``HH:MM`` strings."""
    if value is None:
        return None
    if isinstance(value, str):
        return int(value.split(':', 1)[0])
    return int(value)


def _notification_window(document: Dict[str, Any]) -> Optional[NotificationWindow]:
    hours = _get(document, 'preferences.notificationHours') or _get(document, 'preferences.availableHours')
    if not hours:
        return None
    start = _hour(hours.get('start'))
    end = _hour(hours.get('end'))
    if start is None or end is None:
        return None
    return NotificationWindow(start_hour=start, end_hour=end)


def _preferred_channel(document: Dict[str, Any]) -> str:
    preferred = _get(document, 'preferences.preferredChannel')
    if preferred in {channel.value for channel in NotificationChannel}:
        return preferred

    methods = _get(document, 'preferences.notificationMethods') or {}
    for channel in (NotificationChannel.WHATSAPP, NotificationChannel.PUSH, NotificationChannel.SMS):
        if methods.get(channel.value):
            return channel.value
    return NotificationChannel.WHATSAPP.value


def donor_from_document(document: Dict[str, Any]) -> DonorCandidate:
    """Convert a ``users`` document into a DonorCandidate."""
    last_donation = (
        _get(document, 'donationHistory.lastDonationDate')
        or _get(document, 'medicalInfo.lastDonationDate')
    )
    response_rate = float(_get(document, 'stats.responseRate', 0) or 0)
    if response_rate > 1:
        # Stored as a percentage
        response_rate = response_rate / 100.0

    return DonorCandidate(
        donor_id=str(document['_id']),
        name=document.get('name'),
        blood_type=document['bloodType'],
        coordinates=Coordinates.from_pair(_get(document, 'location.coordinates.coordinates')),
        last_donation_at=last_donation,
        is_available=bool(_get(document, 'availability.isAvailable', True)),
        is_active=document.get('status', 'active') == 'active',
        medically_cleared=bool(_get(document, 'verification.medicallyCleared', False)),
        notification_window=_notification_window(document),
        historical_donation_count=int(_get(document, 'stats.totalDonations', 0) or 0),
        historical_response_rate=min(max(response_rate, 0.0), 1.0),
        phone_number=document.get('phoneNumber'),
        email=document.get('email'),
        preferred_channel=_preferred_channel(document),
    )


def request_from_document(document: Dict[str, Any]) -> BloodRequest:
    """Convert a ``bloodrequests`` document into a BloodRequest."""
    hospital = _get(document, 'location.hospital', {})
    responders = [
        str(match['donorId'])
        for match in _get(document, 'matching.matchedDonors', []) or []
        if match.get('donorId') is not None
    ]

    fields = {
        'request_id': document['requestId'],
        'patient_blood_type': _get(document, 'patient.bloodType'),
        'patient_name': _get(document, 'patient.name'),
        'patient_age': _get(document, 'patient.age'),
        'hospital': Hospital(
            name=hospital.get('name'),
            coordinates=Coordinates.from_pair(_get(hospital, 'coordinates.coordinates')),
            contact_number=hospital.get('contactNumber'),
            city=_get(hospital, 'address.city'),
            state=_get(hospital, 'address.state'),
        ),
        'urgency': _get(document, 'request.urgency', 'urgent'),
        'units_needed': _get(document, 'request.unitsNeeded', 1),
        'search_radius_km': _get(document, 'location.searchRadius'),
        'responder_ids': responders,
        'status': document.get('status', RequestStatus.PENDING.value),
        'expires_at': document.get('expiresAt'),
    }
    if document.get('createdAt') is not None:
        fields['created_at'] = document['createdAt']
    return BloodRequest(**fields)


def _object_ids(ids: Sequence[str]) -> List[Any]:
    """ObjectIds where the id parses as one, raw strings otherwise."""
    converted = []
    for value in ids:
        try:
            converted.append(ObjectId(value))
        except (InvalidId, TypeError):
            converted.append(value)
    return converted


class MongoDonorRepository:
    """Donor repository over the ``users`` collection."""

    def __init__(self, mongodb_service: MongoDBService, cooldown_days: int = 90, clock=utcnow):
        self.mongodb_service = mongodb_service
        self.cooldown_days = cooldown_days
        self.clock = clock

    def build_query(
        self,
        blood_types: Sequence[str],
        center: Coordinates,
        radius_km: float,
        excluded_ids: Sequence[str],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        cooldown_cutoff = (now or self.clock()) - timedelta(days=self.cooldown_days)
        return {
            'role': 'donor',
            'status': 'active',
            'bloodType': {'$in': list(blood_types)},
            'verification.medicallyCleared': True,
            'availability.isAvailable': True,
            'location.coordinates': {
                '$near': {
                    '$geometry': center.to_geojson(),
                    '$maxDistance': km_to_meters(radius_km)
                }
            },
            '_id': {'$nin': _object_ids(excluded_ids)},
            '$or': [
                {'donationHistory.lastDonationDate': {'$exists': False}},
                {'donationHistory.lastDonationDate': None},
                {'donationHistory.lastDonationDate': {'$lte': cooldown_cutoff}}
            ]
        }

    def query_eligible_donors(
        self,
        blood_types: Sequence[str],
        center: Coordinates,
        radius_km: float,
        excluded_ids: Sequence[str],
        limit: int
    ) -> List[DonorCandidate]:
        """
        Find donors near a point that pass the coarse eligibility rules.

        Notification hours are not part of the query; they are evaluated
        in the matching timezone by the eligibility filter.

        Raises:
            RepositoryUnavailableError: If MongoDB cannot be reached
        """
        query = self.build_query(blood_types, center, radius_km, excluded_ids)

        with tracer.start_as_current_span("mongodb.query_donors") as span:
            span.set_attributes({
                "db.collection": USERS_COLLECTION,
                "query.radius_km": radius_km,
                "query.limit": limit,
            })
            try:
                collection = self.mongodb_service.get_collection(USERS_COLLECTION)
                documents = list(collection.find(query).limit(limit))
            except MONGO_ERRORS as e:
                span.record_exception(e)
                logger.error(f"Failed to query eligible donors: {e}")
                raise RepositoryUnavailableError(f"Donor repository unavailable: {e}") from e

            donors = []
            for document in documents:
                try:
                    donors.append(donor_from_document(document))
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.warning(
                        f"Skipping malformed donor document {document.get('_id')}: {e}"
                    )
            span.set_attribute("query.results", len(donors))

        logger.debug(f"Found {len(donors)} donor candidates within {radius_km}km")
        return donors


class MongoBloodRequestStore:
    """Blood request store over the ``bloodrequests`` collection."""

    def __init__(self, mongodb_service: MongoDBService):
        self.mongodb_service = mongodb_service

    @property
    def collection(self):
        return self.mongodb_service.get_collection(BLOOD_REQUESTS_COLLECTION)

    def get_request(self, request_id: str) -> Optional[BloodRequest]:
        """
        Load a blood request by its external id.

        Raises:
            RepositoryUnavailableError: If MongoDB cannot be reached
        """
        try:
            document = self.collection.find_one({'requestId': request_id})
        except MONGO_ERRORS as e:
            raise RepositoryUnavailableError(f"Blood request store unavailable: {e}") from e
        return request_from_document(document) if document else None

    def get_request_status(self, request_id: str) -> Optional[str]:
        try:
            document = self.collection.find_one({'requestId': request_id}, {'status': 1})
        except MONGO_ERRORS as e:
            raise RepositoryUnavailableError(f"Blood request store unavailable: {e}") from e
        return document.get('status') if document else None

    def update_matching_counters(self, request_id: str, counters: MatchingCounters) -> None:
        """Write the process counters onto the request's ``matching`` sub-document."""
        with tracer.start_as_current_span("mongodb.update_counters") as span:
            span.set_attribute("request.id", request_id)
            try:
                result = self.collection.update_one(
                    {'requestId': request_id},
                    {'$set': {
                        'matching.totalNotified': counters.total_notified,
                        'matching.lastNotificationSent': counters.last_notification_sent,
                        'matching.notificationRounds': counters.notification_rounds,
                        'matching.currentRadius': counters.current_radius,
                    }}
                )
            except MONGO_ERRORS as e:
                span.record_exception(e)
                raise RepositoryUnavailableError(f"Blood request store unavailable: {e}") from e

        if result.matched_count == 0:
            logger.warning(f"Blood request not found while updating counters: {request_id}")
        else:
            logger.debug(
                f"Updated blood request matching data: {request_id}",
                extra={"extra_fields": {
                    "total_notified": counters.total_notified,
                    "rounds": counters.notification_rounds
                }}
            )
