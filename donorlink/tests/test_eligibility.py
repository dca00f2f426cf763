# SPDX-License-Identifier: Apache-2.0

"""
Tests for donor eligibility rules and the eligibility filter.
"""

import pytest
from datetime import timedelta

from donorlink.config import MatchingConfig
from donorlink.domain.eligibility import (
    EligibilityFilter,
    is_cooldown_elapsed,
    is_within_notification_hours,
    rejection_reason,
)
from donorlink.exceptions import RepositoryUnavailableError
from donorlink.models.entities import NotificationWindow


class TestCooldown:
    """Test the 90 day donation cooldown."""

    def test_never_donated(self, now):
        assert is_cooldown_elapsed(None, now)

    def test_exactly_ninety_days_is_eligible(self, now):
        assert is_cooldown_elapsed(now - timedelta(days=90), now)

    def test_eighty_nine_days_is_not(self, now):
        assert not is_cooldown_elapsed(now - timedelta(days=89), now)

    def test_one_second_short_is_not(self, now):
        assert not is_cooldown_elapsed(now - timedelta(days=90) + timedelta(seconds=1), now)

    def test_naive_timestamps_are_utc(self, now):
        naive = (now - timedelta(days=91)).replace(tzinfo=None)
        assert is_cooldown_elapsed(naive, now)


class TestNotificationHours:
    """Test the optional notification window."""

    def test_no_window_always_allowed(self):
        assert is_within_notification_hours(None, 3)

    def test_inside_window(self):
        assert is_within_notification_hours(NotificationWindow(start_hour=8, end_hour=20), 12)

    def test_bounds_are_inclusive(self):
        window = NotificationWindow(start_hour=8, end_hour=20)
        assert is_within_notification_hours(window, 8)
        assert is_within_notification_hours(window, 20)
        assert not is_within_notification_hours(window, 21)

    def test_window_wrapping_midnight(self):
        window = NotificationWindow(start_hour=22, end_hour=6)
        assert is_within_notification_hours(window, 23)
        assert is_within_notification_hours(window, 2)
        assert not is_within_notification_hours(window, 12)


class TestRejectionReason:
    """Rules apply in a fixed order and the first failure is reported."""

    def _reason(self, donor, request, now, radius_km=15, excluded=(), hour=12):
        return rejection_reason(
            donor, request, radius_km, ["O+", "O-"], set(excluded), now, hour
        )

    def test_eligible_donor(self, make_donor, make_request, now):
        assert self._reason(make_donor("d1", 5), make_request(), now) is None

    def test_incompatible_blood_type(self, make_donor, make_request, now):
        assert self._reason(make_donor("d1", 5, blood_type="A+"), make_request(), now) == "blood_type"

    def test_outside_geofence(self, make_donor, make_request, now):
        assert self._reason(make_donor("d1", 20), make_request(), now) == "geofence"

    def test_blood_type_checked_before_geofence(self, make_donor, make_request, now):
        donor = make_donor("d1", 20, blood_type="B-")
        assert self._reason(donor, make_request(), now) == "blood_type"

    @pytest.mark.parametrize("flag", ["is_available", "is_active", "medically_cleared"])
    def test_status_flags(self, make_donor, make_request, now, flag):
        donor = make_donor("d1", 5, **{flag: False})
        assert self._reason(donor, make_request(), now) == "status"

    def test_cooldown(self, make_donor, make_request, now):
        donor = make_donor("d1", 5, last_donation_at=now - timedelta(days=30))
        assert self._reason(donor, make_request(), now) == "cooldown"

    def test_already_responded(self, make_donor, make_request, now):
        assert self._reason(make_donor("d1", 5), make_request(), now, excluded={"d1"}) == "already_responded"

    def test_outside_notification_hours(self, make_donor, make_request, now):
        donor = make_donor("d1", 5, notification_window=NotificationWindow(start_hour=18, end_hour=22))
        assert self._reason(donor, make_request(), now, hour=12) == "notification_hours"


class TestEligibilityFilter:
    """Test EligibilityFilter against a fake repository."""

    def test_queries_repository_with_compatible_types(self, donor_repository, make_request, clock):
        eligibility = EligibilityFilter(donor_repository, MatchingConfig(), clock)
        eligibility.find_eligible(make_request(responder_ids=["d9", "d3"]), 15)

        call = donor_repository.calls[0]
        assert call["blood_types"] == ["O+", "O-"]
        assert call["radius_km"] == 15
        assert call["excluded_ids"] == ["d3", "d9"]
        assert call["limit"] == 100
        assert call["center"].as_tuple() == (78.40, 17.44)

    def test_empty_result_is_not_an_error(self, donor_repository, make_request, clock):
        eligibility = EligibilityFilter(donor_repository, MatchingConfig(), clock)
        assert eligibility.find_eligible(make_request(), 15) == []

    def test_refilters_repository_results(self, donor_repository, make_request, make_donor, clock, now):
        donor_repository.donors = [
            make_donor("near", 2),
            make_donor("far", 40),
            make_donor("recent", 3, last_donation_at=now - timedelta(days=89)),
            make_donor("rested", 4, last_donation_at=now - timedelta(days=91)),
            make_donor("responded", 5),
        ]
        eligibility = EligibilityFilter(donor_repository, MatchingConfig(), clock)

        eligible = eligibility.find_eligible(make_request(responder_ids=["responded"]), 15)

        assert [donor.donor_id for donor in eligible] == ["near", "rested"]

    def test_result_is_capped(self, donor_repository, make_request, make_donor, clock):
        donor_repository.donors = [make_donor(f"d{i}", 1) for i in range(10)]
        eligibility = EligibilityFilter(donor_repository, MatchingConfig(max_candidates=4), clock)

        assert len(eligibility.find_eligible(make_request(), 15)) == 4

    def test_notification_hours_use_local_timezone(self, donor_repository, make_request, make_donor, clock):
        # Noon UTC is 17:30 in Kolkata
        donor_repository.donors = [
            make_donor("evening", 1, notification_window=NotificationWindow(start_hour=17, end_hour=21)),
            make_donor("midday", 2, notification_window=NotificationWindow(start_hour=11, end_hour=13)),
        ]
        config = MatchingConfig(local_timezone="Asia/Kolkata")
        eligibility = EligibilityFilter(donor_repository, config, clock)

        assert [donor.donor_id for donor in eligibility.find_eligible(make_request(), 15)] == ["evening"]

    def test_repository_outage_propagates(self, donor_repository, make_request, clock):
        donor_repository.error = RepositoryUnavailableError("down")
        eligibility = EligibilityFilter(donor_repository, MatchingConfig(), clock)

        with pytest.raises(RepositoryUnavailableError):
            eligibility.find_eligible(make_request(), 15)
