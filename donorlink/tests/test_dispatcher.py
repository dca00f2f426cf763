# SPDX-License-Identifier: Apache-2.0

"""
Tests for the notification dispatcher.
"""

import threading
import pytest
from unittest.mock import Mock

from donorlink.config import MatchingConfig
from donorlink.domain.scoring import ScoringEngine
from donorlink.exceptions import NotificationServiceUnavailableError
from donorlink.services.dispatcher import (
    NotificationDispatcher,
    build_notification,
    channel_preferences,
    format_blood_request_message,
)


@pytest.fixture
def scored(make_request, make_donor):
    """Factory for ``count`` scored donors, nearest first."""
    def _scored(count, request=None):
        request = request or make_request()
        donors = [make_donor(f"d{i:02d}", 1 + i * 0.1) for i in range(count)]
        return ScoringEngine().score(donors, request)
    return _scored


class TestBatchSize:
    """Batch size grows per round and is capped."""

    def setup_method(self):
        self.dispatcher = NotificationDispatcher(Mock(), MatchingConfig(inter_batch_delay_seconds=0))

    @pytest.mark.parametrize("round_number,expected", [(1, 30), (2, 40), (3, 50), (4, 50)])
    def test_critical(self, round_number, expected):
        assert self.dispatcher.batch_size("critical", round_number) == expected

    def test_urgent_and_scheduled(self):
        assert self.dispatcher.batch_size("urgent", 1) == 20
        assert self.dispatcher.batch_size("scheduled", 1) == 10
        assert self.dispatcher.batch_size("scheduled", 2) == 20

    def test_unknown_urgency_falls_back(self):
        assert self.dispatcher.batch_size("whenever", 1) == 15


class TestDispatch:
    """Test fan-out, failure counting and sub-batching."""

    def test_sends_top_n_in_score_order(self, sender, matching_config, scored, make_request):
        request = make_request(urgency="scheduled")
        donors = scored(25, request)
        dispatcher = NotificationDispatcher(sender, matching_config)

        result = dispatcher.dispatch(donors, request, round_number=1)

        assert result.successful == 10
        assert result.failed == 0
        assert sender.donor_ids == [donor.donor_id for donor in donors[:10]]
        assert result.sub_batches == 2

    def test_failures_are_counted_not_raised(self, sender, matching_config, scored, make_request):
        request = make_request(urgency="scheduled")
        sender.fail_ids = {"d01", "d03"}
        sender.raise_for = {"d05": RuntimeError("template rejected")}
        dispatcher = NotificationDispatcher(sender, matching_config)

        result = dispatcher.dispatch(scored(10, request), request)

        assert result.successful == 7
        assert result.failed == 3
        assert result.attempted == 10

    def test_each_sub_batch_reported(self, sender, matching_config, scored, make_request):
        request = make_request(urgency="scheduled")
        sender.fail_ids = {"d07"}
        callback = Mock()
        dispatcher = NotificationDispatcher(sender, matching_config)

        dispatcher.dispatch(scored(12, request), request, on_batch_complete=callback)

        assert [c.args for c in callback.call_args_list] == [(5, 0), (4, 1)]

    def test_fewer_donors_than_batch(self, sender, matching_config, scored, make_request):
        dispatcher = NotificationDispatcher(sender, matching_config)
        result = dispatcher.dispatch(scored(3), make_request())
        assert result.to_dict() == {"successful": 3, "failed": 0}

    def test_no_donors(self, sender, matching_config, make_request):
        result = NotificationDispatcher(sender, matching_config).dispatch([], make_request())
        assert result.successful == 0
        assert sender.sent == []

    def test_transport_outage_reports_partial_batch_then_raises(
        self, sender, matching_config, scored, make_request
    ):
        request = make_request(urgency="scheduled")
        sender.raise_for = {"d07": NotificationServiceUnavailableError("broker down")}
        callback = Mock()
        dispatcher = NotificationDispatcher(sender, matching_config)

        with pytest.raises(NotificationServiceUnavailableError):
            dispatcher.dispatch(scored(10, request), request, on_batch_complete=callback)

        assert [c.args for c in callback.call_args_list] == [(5, 0), (2, 0)]

    def test_cancel_between_sub_batches(self, sender, scored, make_request):
        cancel = threading.Event()
        config = MatchingConfig(inter_batch_delay_seconds=0)
        dispatcher = NotificationDispatcher(sender, config, cancel_event=cancel)
        callback = Mock()

        def cancel_after_first_batch(donor_id):
            if donor_id == "d04":
                cancel.set()
        sender.on_send = cancel_after_first_batch

        request = make_request(urgency="scheduled")
        result = dispatcher.dispatch(scored(10, request), request, on_batch_complete=callback)

        assert result.cancelled
        assert result.successful == 5
        assert callback.call_count == 1

    def test_waits_between_sub_batches(self, sender, scored, make_request):
        cancel = Mock()
        cancel.wait.return_value = False
        dispatcher = NotificationDispatcher(
            sender, MatchingConfig(inter_batch_delay_seconds=2.0), cancel_event=cancel
        )
        request = make_request(urgency="scheduled")

        dispatcher.dispatch(scored(10, request), request)

        cancel.wait.assert_called_once_with(2.0)


class TestNotificationContent:
    """Test message formatting and channel selection."""

    def test_message_contents(self, scored, make_request):
        request = make_request()
        donor = scored(1, request)[0]

        message = format_blood_request_message(request, donor)

        assert message.startswith("🚨 BLOOD DONATION REQUEST")
        assert "Dear Donor d00," in message
        assert "Blood Type Needed: O+" in message
        assert "Patient: Ravi Kumar (42y)" in message
        assert "Distance: 1.0km from you" in message
        assert "Urgency: CRITICAL" in message
        assert "Units Needed: 2" in message

    def test_notification_template(self, scored, make_request):
        request = make_request(urgency="urgent")
        donor = scored(1, request)[0]

        notification = build_notification(request, donor)

        assert notification.message_template == "blood_request_urgent"
        assert notification.template_params == [
            "O+", "Ravi Kumar", "Apollo Hospital", "Hyderabad, Telangana", "9876543210", "1.0km away"
        ]
        assert notification.metadata["request_id"] == "BR1001"
        assert notification.metadata["score"] == donor.score

    def test_preferred_channel_first(self, make_donor, scored, make_request):
        donor = scored(1)[0].model_copy(update={"preferred_channel": "sms"})
        assert channel_preferences(donor) == ["sms", "push", "whatsapp"]

    def test_default_channel_order(self, scored):
        assert channel_preferences(scored(1)[0]) == ["whatsapp", "push", "sms"]
