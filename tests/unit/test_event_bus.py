"""Tests for the in-process event bus."""

from autoflow.core.events import RUN_COMPLETED, RUN_FAILED, WILDCARD, EngineEvent, EventBus


class TestEventBus:
    def test_delivers_to_matching_and_wildcard(self):
        bus = EventBus()
        completed, everything = [], []
        bus.subscribe(RUN_COMPLETED, completed.append)
        bus.subscribe(WILDCARD, everything.append)

        bus.emit(EngineEvent(type=RUN_COMPLETED, run_id="r1"))
        bus.emit(EngineEvent(type=RUN_FAILED, run_id="r2"))

        assert [e.run_id for e in completed] == ["r1"]
        assert [e.run_id for e in everything] == ["r1", "r2"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(RUN_COMPLETED, seen.append)

        unsubscribe()
        unsubscribe()
        bus.emit(EngineEvent(type=RUN_COMPLETED))

        assert seen == []

    def test_failing_handler_does_not_block_others(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(RUN_FAILED, broken)
        bus.subscribe(RUN_FAILED, seen.append)

        bus.emit(EngineEvent(type=RUN_FAILED, error="boom"))

        assert len(seen) == 1
        assert "handler bug" in caplog.text

    def test_events_get_ids_and_timestamps(self):
        first, second = EngineEvent(type=RUN_COMPLETED), EngineEvent(type=RUN_COMPLETED)
        assert first.id != second.id
        assert first.timestamp.tzinfo is not None
