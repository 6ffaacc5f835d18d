# Overview: Pytest coverage for theater broadcast events, SSE framing and polling.

import json
from datetime import timedelta

import pytest

from concessions.models import BroadcastEvent
from concessions.services import broadcast_service
from concessions.time_utils import utcnow


def _publish(db_session, theater, count=1, event_type='order.created'):
    events = [
        broadcast_service.publish(theater.id, event_type, {'orderId': i + 1})
        for i in range(count)
    ]
    db_session.commit()
    return events


class TestEventLog:

    def test_events_after_in_id_order(self, db_session, theater, other_theater):
        first, second, third = _publish(db_session, theater, 3)
        _publish(db_session, other_theater, 1)

        events = broadcast_service.events_after(theater.id, first.id)

        assert [e.id for e in events] == [second.id, third.id]
        assert broadcast_service.latest_event_id(theater.id) == third.id

    def test_unknown_event_type_rejected(self, db_session, theater):
        with pytest.raises(ValueError):
            broadcast_service.publish(theater.id, 'order.lost', {})

    def test_rolled_back_publish_is_not_visible(self, db_session, theater):
        broadcast_service.publish(theater.id, 'order.created', {'orderId': 1})
        db_session.rollback()
        assert broadcast_service.events_after(theater.id, 0) == []

    def test_format_sse(self, db_session, theater):
        (event,) = _publish(db_session, theater, 1, event_type='stock.delta')

        frame = broadcast_service.format_sse(event)

        lines = frame.split('\n')
        assert lines[0] == f'id: {event.id}'
        assert lines[1] == 'event: stock.delta'
        assert lines[2].startswith('data: ')
        assert json.loads(lines[2][len('data: '):])['data'] == {'orderId': 1}
        assert frame.endswith('\n\n')

    def test_prune_removes_old_events(self, db_session, theater):
        old, recent = _publish(db_session, theater, 2)
        old.created_at = utcnow() - timedelta(hours=72)
        db_session.commit()

        removed = broadcast_service.prune(48)
        db_session.commit()

        assert removed == 1
        assert [e.id for e in db_session.query(BroadcastEvent).all()] == [recent.id]


class TestStreamGenerator:

    def test_starts_at_latest_without_resume_token(self, db_session, theater):
        _publish(db_session, theater, 2)

        frames = list(broadcast_service.iter_stream(
            theater.id,
            last_event_id=None,
            heartbeat_seconds=20,
            poll_interval=0,
            max_seconds=0,
        ))

        assert frames == ['retry: 3000\n\n']

    def test_resumes_after_token(self, db_session, theater):
        first, second = _publish(db_session, theater, 2)

        frames = list(broadcast_service.iter_stream(
            theater.id,
            last_event_id=first.id,
            heartbeat_seconds=20,
            poll_interval=0,
            max_seconds=0,
        ))

        assert frames[0] == 'retry: 3000\n\n'
        assert frames[1].startswith(f'id: {second.id}\n')
        assert len(frames) == 2

    def test_heartbeat_when_idle(self, db_session, theater):
        ticks = iter([0.0, 30.0, 30.0, 60.0, 60.0])

        frames = list(broadcast_service.iter_stream(
            theater.id,
            last_event_id=0,
            heartbeat_seconds=20,
            poll_interval=0,
            max_seconds=45,
            clock=lambda: next(ticks),
            sleep=lambda seconds: None,
        ))

        assert frames == ['retry: 3000\n\n', ': keep-alive\n\n']


class TestRoutes:

    def test_polling_endpoint(self, db_session, client, cashier_headers, theater):
        first, second, third = _publish(db_session, theater, 3)

        response = client.get(f'/api/notifications/events?after={first.id}', headers=cashier_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert [e['id'] for e in data['events']] == [second.id, third.id]
        assert data['events'][0]['type'] == 'order.created'
        assert data['lastEventId'] == third.id
        assert data['latestEventId'] == third.id

    def test_polling_with_nothing_new(self, db_session, client, cashier_headers, theater):
        (only,) = _publish(db_session, theater, 1)
        response = client.get('/api/notifications/events', headers={**cashier_headers, 'Last-Event-ID': str(only.id)})

        data = response.get_json()
        assert data['events'] == []
        assert data['lastEventId'] == only.id

    def test_polling_other_theater_forbidden(self, client, cashier_headers, other_theater):
        response = client.get(f'/api/notifications/events?theaterId={other_theater.id}', headers=cashier_headers)
        assert response.status_code == 403

    def test_stream_resumes_from_last_event_id(self, db_session, client, cashier_headers, theater):
        first, second = _publish(db_session, theater, 2)

        response = client.get(
            '/api/notifications/stream',
            headers={**cashier_headers, 'Last-Event-ID': str(first.id)},
        )

        assert response.status_code == 200
        assert response.mimetype == 'text/event-stream'
        body = response.get_data(as_text=True)
        assert body.startswith('retry: 3000\n\n')
        assert f'id: {second.id}\n' in body
        assert f'id: {first.id}\n' not in body

    def test_stream_accepts_query_token(self, client, cashier_headers, theater):
        token = cashier_headers['Authorization'].split(' ', 1)[1]
        response = client.get(f'/api/notifications/stream?token={token}')
        assert response.status_code == 200

    def test_stream_requires_auth(self, client):
        response = client.get('/api/notifications/stream')
        assert response.status_code == 401
        assert response.get_json()['kind'] == 'auth'
