"""
Unit tests for the timeline controller, scenario models and loading,
settings and exceptions
"""
import json
import logging

import pytest
from pydantic import ValidationError

from distrisim.config import BUNDLED_SCENARIO_DIR, Settings, get_settings, setup_logging
from distrisim.exceptions import (
    DistriSimException,
    ScenarioError,
    ScenarioNotFoundError,
    TimelineError,
    UnknownProtocolError,
)
from distrisim.timeline.controller import TimelineController
from distrisim.timeline.loader import get_scenario, load_scenario_file, load_scenarios, parse_scenarios
from distrisim.timeline.models import Scenario, SimulationEvent, TimelineState, TimelineStatus


def scenario_dict(scenario_id: str = "demo", concept: str = "raft", **extra):
    data = {
        "id": scenario_id,
        "name": f"Scenario {scenario_id}",
        "concept": concept,
        "initialState": {"nodeCount": 3},
        "events": [
            {"id": 0, "timestamp": 0, "type": "start_election", "data": {"nodeId": "node-0"}},
            {"id": 1, "timestamp": 500, "type": "heartbeat", "data": {"leaderId": "node-0"}},
        ],
        "learningObjectives": ["Watch the vote"],
        "expectedOutcome": "node-0 leads",
    }
    data.update(extra)
    return data


# ============================================================================
# Controller Tests
# ============================================================================

@pytest.fixture
def events():
    return [
        SimulationEvent(id=0, timestamp=0, type="a"),
        SimulationEvent(id=1, timestamp=100, type="b"),
        SimulationEvent(id=2, timestamp=200, type="show_state"),
    ]


@pytest.fixture
def applied():
    return []


@pytest.fixture
def controller(events, applied) -> TimelineController:
    controller = TimelineController(events)
    controller.on("a", lambda e: applied.append(e.id))
    controller.on("b", lambda e: applied.append(e.id))
    return controller


@pytest.mark.unit
class TestTimelineController:

    def test_initial_state(self, controller: TimelineController):
        state = controller.get_state()
        assert state.cursor == 0
        assert state.status == TimelineStatus.STOPPED
        assert state.total_events == 3
        assert controller.current_event().id == 0

    def test_step_forward_applies_events_in_order(self, controller: TimelineController, applied):
        assert controller.step_forward()
        assert controller.status == TimelineStatus.PAUSED
        assert controller.step_forward()
        assert controller.step_forward()

        # unbound event types are skipped
        assert applied == [0, 1]
        assert controller.status == TimelineStatus.COMPLETE
        assert controller.current_event() is None

    def test_step_forward_at_end(self, controller: TimelineController):
        for _ in range(3):
            controller.step_forward()
        assert not controller.step_forward()
        assert controller.cursor == 3
        assert controller.status == TimelineStatus.COMPLETE

    def test_empty_timeline(self):
        controller = TimelineController()
        assert not controller.step_forward()
        assert controller.status == TimelineStatus.STOPPED
        assert controller.get_progress() == 0.0
        assert not controller.play()

    def test_step_backward_without_capture(self, controller: TimelineController):
        assert controller.step_backward() is None

        controller.step_forward()
        controller.step_forward()

        assert controller.step_backward() == {"cursor": 1}
        assert controller.cursor == 1
        assert controller.status == TimelineStatus.PAUSED

    def test_raising_handler_leaves_no_history(self, events):
        controller = TimelineController(events)

        def fail(event):
            raise ValueError("bad event")

        controller.on("a", fail)
        with pytest.raises(ValueError):
            controller.step_forward()

        assert controller.cursor == 0
        assert controller.get_state().history_size == 0
        assert controller.step_backward() is None

    def test_step_backward_returns_captured_snapshot(self, events):
        counter = {"value": 0}
        controller = TimelineController(events, capture=lambda: dict(counter))
        controller.on("a", lambda e: counter.update(value=10))

        controller.step_forward()
        controller.step_forward()

        assert controller.step_backward() == {"value": 10}
        assert controller.step_backward() == {"value": 0}
        assert controller.cursor == 0

    def test_prior_snapshot_overrides_capture(self, events):
        controller = TimelineController(events, capture=lambda: "captured")
        controller.step_forward("given")
        assert controller.step_backward() == "given"

    def test_jump_to_event_replays_from_start(self, controller: TimelineController, applied):
        rewinds = []
        controller._rewind = lambda: rewinds.append(True)
        controller.step_forward()

        assert controller.jump_to_event(1)

        assert rewinds == [True]
        assert applied == [0, 0, 1]
        assert controller.cursor == 2
        assert controller.status == TimelineStatus.PAUSED
        assert controller.get_state().history_size == 2

    def test_jump_to_last_event_completes(self, controller: TimelineController):
        assert controller.jump_to_event(2)
        assert controller.status == TimelineStatus.COMPLETE

    def test_jump_to_unknown_event(self, controller: TimelineController):
        controller.step_forward()
        assert not controller.jump_to_event(9)
        assert controller.cursor == 1

    def test_play_and_pause(self, controller: TimelineController):
        controller.pause()
        assert controller.status == TimelineStatus.STOPPED

        assert controller.play()
        assert controller.get_state().is_playing
        controller.step_forward()
        assert controller.status == TimelineStatus.PLAYING

        controller.pause()
        assert controller.status == TimelineStatus.PAUSED

    def test_play_when_complete(self, controller: TimelineController):
        controller.jump_to_event(2)
        assert not controller.play()
        assert controller.status == TimelineStatus.COMPLETE

    @pytest.mark.parametrize("speed", [0, -1, float("inf"), None])
    def test_invalid_speed(self, controller: TimelineController, speed):
        with pytest.raises(TimelineError) as exc_info:
            controller.set_speed(speed)
        assert isinstance(exc_info.value, ValueError)
        assert exc_info.value.details[0]["field"] == "speed"
        assert controller.speed == 1.0

    def test_speed_scales_interval(self, events):
        controller = TimelineController(events, speed=4, base_interval_ms=1000)
        assert controller.interval_ms == 250
        controller.set_speed(0.5)
        assert controller.interval_ms == 2000

    def test_progress(self, controller: TimelineController):
        controller.step_forward()
        assert controller.get_progress() == pytest.approx(100 / 3)
        assert controller.get_state().to_dict()["status"] == "paused"

    def test_handlers(self, controller: TimelineController, applied):
        assert controller.handles("a")
        controller.on("a", lambda e: applied.append("replaced"))
        assert controller.off("b")
        assert not controller.off("b")

        controller.step_forward()
        controller.step_forward()
        assert applied == ["replaced"]

    def test_state_and_events_are_copies(self, controller: TimelineController):
        state = controller.get_state()
        state.cursor = 2
        controller.events[0].type = "changed"

        assert controller.cursor == 0
        assert controller.events[0].type == "a"

    def test_reset(self, controller: TimelineController):
        controller.play()
        controller.step_forward()
        controller.reset()

        state = controller.get_state()
        assert (state.cursor, state.status, state.history_size) == (0, TimelineStatus.STOPPED, 0)


# ============================================================================
# Model Tests
# ============================================================================

@pytest.mark.unit
class TestModels:

    def test_scenario_aliases(self):
        scenario = Scenario.model_validate(scenario_dict())
        assert scenario.initial_state == {"nodeCount": 3}
        assert scenario.learning_objectives == ["Watch the vote"]
        assert scenario.expected_outcome == "node-0 leads"
        assert scenario.duration_ms == 500
        assert scenario.event_types() == ["heartbeat", "start_election"]

    def test_populate_by_name(self):
        scenario = Scenario(id="x", name="X", concept="raft", initial_state={"nodeCount": 2})
        assert scenario.initial_state == {"nodeCount": 2}
        assert scenario.duration_ms == 0

    def test_timestamps_must_not_decrease(self):
        data = scenario_dict()
        data["events"][1]["timestamp"] = 0
        data["events"][0]["timestamp"] = 100
        with pytest.raises(ValidationError, match="precedes"):
            Scenario.model_validate(data)

    def test_event_ids_must_increase(self):
        data = scenario_dict()
        data["events"][1]["id"] = 0
        with pytest.raises(ValidationError, match="event ids must increase"):
            Scenario.model_validate(data)

    def test_equal_timestamps_are_allowed(self):
        data = scenario_dict()
        data["events"][1]["timestamp"] = 0
        assert len(Scenario.model_validate(data).events) == 2

    @pytest.mark.parametrize("field,value", [("id", -1), ("timestamp", -5), ("type", "")])
    def test_invalid_event(self, field, value):
        data = {"id": 0, "timestamp": 0, "type": "x"}
        data[field] = value
        with pytest.raises(ValidationError):
            SimulationEvent.model_validate(data)

    def test_timeline_state_to_dict(self):
        state = TimelineState(cursor=2, status=TimelineStatus.COMPLETE, speed=2.0, total_events=2)
        assert state.to_dict() == {
            "cursor": 2,
            "status": "complete",
            "speed": 2.0,
            "total_events": 2,
            "history_size": 0,
        }


# ============================================================================
# Loader Tests
# ============================================================================

@pytest.fixture
def scenario_dir(tmp_path):
    (tmp_path / "a-raft.json").write_text(json.dumps([scenario_dict("one"), scenario_dict("two")]))
    (tmp_path / "b-lock.json").write_text(json.dumps(scenario_dict("three", concept="distributed-locking")))
    (tmp_path / "notes.txt").write_text("ignored")
    return tmp_path


@pytest.mark.unit
class TestLoader:

    def test_parse_single_and_list(self):
        assert len(parse_scenarios(scenario_dict())) == 1
        assert [s.id for s in parse_scenarios([scenario_dict("a"), scenario_dict("b")])] == ["a", "b"]

    def test_parse_reports_fields(self):
        data = scenario_dict()
        del data["name"]
        with pytest.raises(ScenarioError) as exc_info:
            parse_scenarios([scenario_dict(), data], source="inline")

        error = exc_info.value
        assert error.code == "SCENARIO_INVALID"
        assert "#1" in error.message
        assert error.details[0] == {"field": "source", "value": "inline"}
        assert any(d.get("field") == "name" for d in error.details[1:])

    def test_load_directory_sorted(self, scenario_dir):
        assert [s.id for s in load_scenarios(scenario_dir)] == ["one", "two", "three"]

    def test_load_directory_by_concept(self, scenario_dir):
        assert [s.id for s in load_scenarios(scenario_dir, concept="distributed-locking")] == ["three"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ScenarioError, match="directory not found"):
            load_scenarios(tmp_path / "missing")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ScenarioError, match="not found"):
            load_scenario_file(tmp_path / "missing.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{ not json")
        with pytest.raises(ScenarioError, match="Malformed JSON"):
            load_scenario_file(path)

    def test_get_scenario(self, scenario_dir):
        assert get_scenario("two", directory=scenario_dir).id == "two"

    def test_get_scenario_not_found(self, scenario_dir):
        with pytest.raises(ScenarioNotFoundError) as exc_info:
            get_scenario("three", concept="raft", directory=scenario_dir)

        error = exc_info.value
        assert error.code == "SCENARIO_NOT_FOUND"
        assert error.details == [{"field": "scenario_id", "value": "three"}]
        assert "concept raft" in error.message

    def test_bundled_scenarios_load(self):
        scenarios = load_scenarios(BUNDLED_SCENARIO_DIR)
        assert len(scenarios) >= 21
        assert get_scenario("basic-election", concept="raft", directory=BUNDLED_SCENARIO_DIR).concept == "raft"


# ============================================================================
# Settings and Exception Tests
# ============================================================================

@pytest.mark.unit
class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ("DISTRISIM_DEFAULT_SPEED", "DISTRISIM_DELIVERY_DELAY_TICKS", "DISTRISIM_SCENARIO_DIR"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.default_speed == 1.0
        assert settings.delivery_delay_ticks == 1
        assert settings.scenario_dir == BUNDLED_SCENARIO_DIR
        assert settings.step_interval_ms == 1000

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("DISTRISIM_DEFAULT_SPEED", "4")
        monkeypatch.setenv("DISTRISIM_RANDOM_SEED", "7")

        settings = get_settings()
        assert settings.default_speed == 4.0
        assert settings.random_seed == 7
        assert settings.step_interval_ms == 250
        assert get_settings() is settings

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings(DISTRISIM_DEFAULT_SPEED=0)
        with pytest.raises(ValidationError):
            Settings(DISTRISIM_DELIVERY_DELAY_TICKS=-1)

    def test_setup_logging(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("debug", str(tmp_path / "run.log"))
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 2
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


@pytest.mark.unit
class TestExceptions:

    def test_to_dict(self):
        error = DistriSimException("boom", details=[{"field": "x"}])
        assert error.to_dict() == {"error": "DISTRISIM_ERROR", "message": "boom", "details": [{"field": "x"}]}
        assert str(error) == "boom"

    def test_unknown_protocol(self):
        error = UnknownProtocolError("zab", ["paxos", "raft"])
        assert error.message == "Unknown protocol: zab"
        assert error.to_dict()["details"] == [{"field": "concept", "value": "zab", "available": ["paxos", "raft"]}]

    def test_scenario_error_without_source(self):
        assert ScenarioError("bad").details == []

    def test_not_found_is_scenario_error(self):
        assert isinstance(ScenarioNotFoundError("x"), ScenarioError)
