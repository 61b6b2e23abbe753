"""Tests for the session registry."""

import random

from streamhub.session_registry import SessionState, stream_key_from_path


class TestPublishLifecycle:
    """Publish intent and publish end handling."""

    def test_intent_then_end(self, registry):
        """A publish intent lists the stream, the matching end removes it."""
        session = registry.on_publish_intent("c1", "/live/abc")

        assert session is not None
        assert session.state == SessionState.PUBLISHING
        assert [s.stream_path for s in registry.list()] == ["/live/abc"]

        registry.on_publish_end("c1")
        assert registry.list() == []

    def test_session_is_live_before_confirmation(self, registry):
        """Liveness does not wait for the publish confirmation hook."""
        registry.on_publish_intent("c1", "/live/abc")

        live = registry.find_by_key("abc")
        assert live is not None
        assert live.is_live
        assert live.confirmed_at is None

    def test_confirmation_only_stamps(self, registry, events):
        """Publish confirmation sets confirmed_at and emits nothing."""
        registry.on_publish_intent("c1", "/live/abc")
        before = list(events.types())

        session = registry.on_publish_confirmed("c1", "/live/abc")

        assert session.confirmed_at is not None
        assert session.is_live
        assert events.types() == before

    def test_confirmation_for_unknown_session(self, registry):
        assert registry.on_publish_confirmed("ghost", "/live/abc") is None
        assert registry.count() == 0

    def test_end_for_unknown_session_is_ignored(self, registry, events):
        """An end without a start is logged, never raised."""
        assert registry.on_publish_end("ghost") is None
        assert events.events == []

    def test_end_is_idempotent(self, registry, events):
        registry.on_publish_intent("c1", "/live/abc")
        first = registry.on_publish_end("c1")
        second = registry.on_publish_end("c1")

        assert first.state == SessionState.ENDED
        assert second is None
        assert events.types() == ["stream_started", "stream_ended"]

    def test_repeated_intent_is_idempotent(self, registry, events):
        first = registry.on_publish_intent("c1", "/live/abc")
        second = registry.on_publish_intent("c1", "/live/abc")

        assert first is second
        assert registry.count() == 1
        assert events.types() == ["stream_started"]

    def test_second_publisher_on_same_path_rejected(self, registry):
        """Only one session may publish a given path."""
        registry.on_publish_intent("c1", "/live/abc")

        assert registry.on_publish_intent("c2", "/live/abc") is None
        assert [s.session_id for s in registry.list()] == ["c1"]

    def test_path_reusable_after_end(self, registry):
        registry.on_publish_intent("c1", "/live/abc")
        registry.on_publish_end("c1")

        assert registry.on_publish_intent("c2", "/live/abc") is not None


class TestQueries:
    """Listing and lookups."""

    def test_list_keeps_insertion_order(self, registry):
        for i, key in enumerate(["b", "a", "c"]):
            registry.on_publish_intent(f"c{i}", f"/live/{key}")

        assert [s.stream_key for s in registry.list()] == ["b", "a", "c"]

    def test_list_is_a_snapshot(self, registry):
        registry.on_publish_intent("c1", "/live/abc")
        snapshot = registry.list()
        registry.on_publish_end("c1")

        assert len(snapshot) == 1

    def test_find_by_key_matches_exactly(self, registry):
        """Stop lookups do not match on substrings."""
        registry.on_publish_intent("c1", "/live/abcdef")

        assert registry.find_by_key("abc") is None
        assert registry.find_by_key("abcdef").session_id == "c1"
        assert registry.find_by_key("/live/abcdef").session_id == "c1"

    def test_get(self, registry):
        registry.on_publish_intent("c1", "/live/abc")

        assert registry.get("c1").stream_path == "/live/abc"
        assert registry.get("c2") is None

    def test_to_dict(self, registry):
        registry.on_publish_intent("c1", "/live/abc", {"addr": "10.0.0.1"})
        data = registry.get("c1").to_dict()

        assert data["id"] == "c1"
        assert data["streamPath"] == "/live/abc"
        assert data["streamKey"] == "abc"
        assert data["isLive"] is True
        assert data["confirmed"] is False
        assert isinstance(data["connectedAt"], int)

    def test_stream_key_from_path(self):
        assert stream_key_from_path("/live/abc") == "abc"
        assert stream_key_from_path("/live/abc/") == "abc"
        assert stream_key_from_path("") == "unknown"


class TestEvents:
    """Bridge emissions."""

    def test_event_sees_committed_state(self, registry, bridge):
        """Subscribers reading the registry inside the callback see the transition."""
        seen = []
        bridge.subscribe(lambda e: seen.append((e.type, registry.count())))

        registry.on_publish_intent("c1", "/live/abc")
        registry.on_publish_end("c1")

        assert seen == [("stream_started", 1), ("stream_ended", 0)]

    def test_event_payload(self, registry, events):
        registry.on_publish_intent("c1", "/live/abc")
        data = events.events[0].to_dict()

        assert data["type"] == "stream_started"
        assert data["streamPath"] == "/live/abc"
        assert data["sessionId"] == "c1"


class TestRandomSequences:
    """Registry contents after arbitrary intent/end sequences."""

    def test_list_matches_unmatched_intents(self, registry):
        rng = random.Random(1234)
        expected = {}

        for step in range(500):
            session_id = f"c{rng.randrange(40)}"
            if rng.random() < 0.55:
                path = f"/live/k{rng.randrange(60)}"
                taken = any(p == path and s != session_id for s, p in expected.items())
                result = registry.on_publish_intent(session_id, path)
                if session_id in expected:
                    assert result is not None
                elif taken:
                    assert result is None
                else:
                    assert result is not None
                    expected[session_id] = path
            else:
                registry.on_publish_end(session_id)
                expected.pop(session_id, None)

            assert {s.session_id: s.stream_path for s in registry.list()} == expected
