"""
Unit tests for domain events and the redis publisher.
"""
import json

import pytest
import redis

from shared.events import (
    Event, EventType, state_changed_event, payment_event, payment_anomaly_event, match_event
)
from shared.pubsub import EventPublisher, GLOBAL_CHANNEL


class TestEvents:

    def test_json_round_trip(self):
        event = state_changed_event('t_1', 'open', 'full', 'admission')
        restored = Event.from_json(event.to_json())

        assert restored.type == EventType.STATE_CHANGED
        assert restored.tournament_id == 't_1'
        assert restored.data == {'from_state': 'open', 'to_state': 'full', 'trigger': 'admission'}

    @pytest.mark.parametrize('status,event_type', [
        ('pending', EventType.PAYMENT_INITIATED),
        ('success', EventType.PAYMENT_SUCCEEDED),
        ('failed', EventType.PAYMENT_FAILED),
        ('refunded', EventType.PAYMENT_REFUNDED),
    ])
    def test_payment_event_type(self, status, event_type):
        assert payment_event('t_1', 'team_1', 'txn', status, 100).type == event_type

    def test_anomaly_event(self):
        event = payment_anomaly_event('t_1', 'txn', 'success', 'failed')
        assert event.data['current_status'] == 'success'
        assert event.data['reported_status'] == 'failed'

    def test_match_event(self):
        event = match_event('t_1', 'match_1', EventType.MATCH_UPDATED, 'completed',
                            winner='team_a', score={'team1': 2, 'team2': 0})
        restored = Event.from_json(event.to_json())

        assert restored.type == EventType.MATCH_UPDATED
        assert restored.data['winner'] == 'team_a'


class TestEventPublisher:
    """Tests for publishing to redis channels."""

    def test_without_redis_only_logs(self, caplog):
        caplog.set_level('INFO')
        publisher = EventPublisher()

        assert not publisher.enabled
        assert publisher.publish_tournament_event('t_1', state_changed_event('t_1', 'draft', 'open')) is False
        assert 't_1' in caplog.text
        assert publisher.get_recent_events('t_1') == []

    def test_publishes_to_tournament_and_global_channels(self, mocker):
        client = mocker.MagicMock()
        publisher = EventPublisher(client, log_size=10)
        event = state_changed_event('t_1', 'draft', 'open')

        assert publisher.publish_tournament_event('t_1', event) is True

        channels = [c[0][0] for c in client.publish.call_args_list]
        assert channels == ['tournament:t_1:events', GLOBAL_CHANNEL]
        assert json.loads(client.publish.call_args[0][1])['type'] == 'state.changed'
        client.ltrim.assert_called_once_with('tournament:t_1:event_log', 0, 9)

    def test_redis_failure_is_swallowed(self, mocker):
        """Notification failures never reach the caller."""
        client = mocker.MagicMock()
        client.publish.side_effect = redis.ConnectionError('refused')
        publisher = EventPublisher(client)

        assert publisher.publish_tournament_event('t_1', state_changed_event('t_1', 'a', 'b')) is False

    def test_recent_events(self, mocker):
        client = mocker.MagicMock()
        client.lrange.return_value = [state_changed_event('t_1', 'draft', 'open').to_json()]
        publisher = EventPublisher(client)

        events = publisher.get_recent_events('t_1', count=5)
        assert events[0].data['to_state'] == 'open'
        client.lrange.assert_called_once_with('tournament:t_1:event_log', 0, 4)

    def test_ping(self, mocker):
        client = mocker.MagicMock()
        client.ping.side_effect = redis.ConnectionError('refused')
        assert EventPublisher(client).ping() is False
