import json

import redis

from services.notifier import ChangeNotifier


class FakePubSub:
    def __init__(self, messages):
        self.messages = list(messages)
        self.subscribed = []
        self.closed = False

    def subscribe(self, channel):
        self.subscribed.append(channel)

    def get_message(self, timeout=None):
        return self.messages.pop(0) if self.messages else None

    def close(self):
        self.closed = True


class FakeRedis:
    def __init__(self, messages=()):
        self.published = []
        self.pubsub_client = FakePubSub(messages)
        self.error = None

    def publish(self, channel, data):
        if self.error:
            raise self.error
        self.published.append((channel, data))
        return 1

    def pubsub(self, ignore_subscribe_messages=False):
        return self.pubsub_client


class TestPublish:
    def test_event_shape(self):
        conn = FakeRedis()

        ChangeNotifier(conn).publish(
            "user-1", "update", {"id": "job-1", "status": "diarized"}, previous={"id": "job-1", "status": "diarizing"}
        )

        channel, data = conn.published[0]
        assert channel == "jobs:user-1"
        assert json.loads(data) == {
            "eventType": "update",
            "previous": {"id": "job-1", "status": "diarizing"},
            "current": {"id": "job-1", "status": "diarized"},
        }

    def test_redis_failure_does_not_raise(self):
        conn = FakeRedis()
        conn.error = redis.ConnectionError("connection refused")

        ChangeNotifier(conn).publish("user-1", "insert", {"id": "job-1"})

        assert conn.published == []


class TestListen:
    def test_marks_liveness_then_yields_events(self):
        event = {"eventType": "update", "previous": None, "current": {"id": "job-1", "status": "uploaded"}}
        conn = FakeRedis([
            {"type": "message", "data": json.dumps(event).encode()},
            {"type": "message", "data": b"not json"},
            {"type": "pmessage", "data": b"{}"},
        ])

        stream = ChangeNotifier(conn).listen("user-1", heartbeat_sec=0.01)
        received = [next(stream) for _ in range(3)]

        # Live marker, the event, then an idle heartbeat; the bad frames are dropped.
        assert received == [None, event, None]
        assert conn.pubsub_client.subscribed == ["jobs:user-1"]

        stream.close()
        assert conn.pubsub_client.closed is True

    def test_subscribes_before_first_yield(self):
        conn = FakeRedis()

        stream = ChangeNotifier(conn).listen("user-1")
        assert conn.pubsub_client.subscribed == []

        assert next(stream) is None
        assert conn.pubsub_client.subscribed == ["jobs:user-1"]
        stream.close()
