"""
Tests for plan documents, event vocabulary and duration helpers.

Covers:
  - load_plan validation (graph integrity, closed event set, durations)
  - duplicate transition policy (first declared wins / optional rejection)
  - provider ↔ plan event vocabulary
  - ISO-8601 durations, quiet hours and send-time calculation
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_plan
from core.errors import PlanValidationError
from models.events import (
    is_timeout_event, normalize_event_type, provider_event_type, real_event_for,
)
from models.plan import QuietHours, SendNode, StopNode, WaitNode, load_plan
from utils.durations import (
    apply_quiet_hours, calculate_schedule_time, is_in_quiet_hours,
    is_valid_iso_duration, parse_iso_duration,
)


# ──────────────────────────────────────────────────────────────
#  load_plan
# ──────────────────────────────────────────────────────────────

class TestLoadPlan:
    def test_valid_plan_parses_into_tagged_nodes(self, plan_dict):
        plan = load_plan(plan_dict)
        assert plan.start_node_id == "N1"
        assert isinstance(plan.get_node("N1"), SendNode)
        assert isinstance(plan.get_node("N3"), StopNode)
        assert plan.start_node.subject == "Quick question"

    def test_json_string_accepted(self, plan_dict):
        plan = load_plan(json.dumps(plan_dict))
        assert len(plan.nodes) == 4

    def test_defaults_applied(self, plan_dict):
        plan = load_plan(plan_dict)
        assert plan.version == "1.0"
        assert plan.defaults.timers.no_open_after == "PT72H"
        assert plan.defaults.timers.no_click_after == "PT24H"
        assert plan.get_node("N1").schedule.delay == "PT0S"

    def test_unknown_start_node_rejected(self):
        with pytest.raises(PlanValidationError, match="startNodeId"):
            load_plan(make_plan(startNodeId="N9"))

    def test_dangling_transition_target_rejected(self, plan_dict):
        plan_dict["nodes"][0]["transitions"][0]["to"] = "N9"
        with pytest.raises(PlanValidationError, match="unknown node 'N9'"):
            load_plan(plan_dict)

    def test_duplicate_node_ids_rejected(self, plan_dict):
        plan_dict["nodes"].append({"id": "N3", "action": "stop"})
        with pytest.raises(PlanValidationError, match="duplicate node id"):
            load_plan(plan_dict)

    def test_unknown_event_type_rejected(self, plan_dict):
        plan_dict["nodes"][0]["transitions"][0]["on"] = "replied"
        with pytest.raises(PlanValidationError):
            load_plan(plan_dict)

    def test_unknown_action_rejected(self, plan_dict):
        plan_dict["nodes"][2]["action"] = "call"
        with pytest.raises(PlanValidationError):
            load_plan(plan_dict)

    def test_transition_needs_exactly_one_window(self, plan_dict):
        plan_dict["nodes"][0]["transitions"][0]["after"] = "PT1H"
        with pytest.raises(PlanValidationError, match="exactly one"):
            load_plan(plan_dict)

        del plan_dict["nodes"][0]["transitions"][0]["after"]
        del plan_dict["nodes"][0]["transitions"][0]["within"]
        with pytest.raises(PlanValidationError, match="exactly one"):
            load_plan(plan_dict)

    def test_invalid_duration_rejected(self, plan_dict):
        plan_dict["nodes"][0]["transitions"][1]["after"] = "72 hours"
        with pytest.raises(PlanValidationError, match="ISO-8601"):
            load_plan(plan_dict)

    def test_stop_node_cannot_have_transitions(self, plan_dict):
        plan_dict["nodes"][2]["transitions"] = [{"on": "opened", "to": "N1", "within": "PT1H"}]
        with pytest.raises(PlanValidationError, match="stop node"):
            load_plan(plan_dict)

    def test_invalid_timezone_rejected(self):
        with pytest.raises(PlanValidationError, match="timezone"):
            load_plan(make_plan(timezone="Mars/Olympus"))

    def test_invalid_quiet_hours_rejected(self):
        with pytest.raises(PlanValidationError):
            load_plan(make_plan(quietHours={"start": "25:00", "end": "07:00"}))

    def test_round_trip_preserves_camel_case(self, plan_dict):
        dumped = load_plan(plan_dict).to_json_dict()
        assert dumped["startNodeId"] == "N1"
        assert load_plan(dumped) == load_plan(plan_dict)

    def test_node_without_transitions_is_terminal(self, plan_dict):
        plan_dict["nodes"].append({"id": "W1", "action": "wait"})
        plan = load_plan(plan_dict)
        assert isinstance(plan.get_node("W1"), WaitNode)
        assert plan.get_node("W1").is_terminal
        assert not plan.get_node("N1").is_terminal


class TestDuplicateTransitions:
    @pytest.fixture
    def dup_plan(self, plan_dict):
        plan_dict["nodes"][0]["transitions"].append({"on": "no_open", "to": "N4", "after": "PT1H"})
        return plan_dict

    def test_first_declared_wins(self, dup_plan):
        node = load_plan(dup_plan).get_node("N1")
        assert node.find_transition("no_open").to == "N2"
        timeouts = node.timeout_transitions()
        assert [(t.on, t.to) for t in timeouts] == [("no_open", "N2")]

    def test_rejected_when_configured(self, dup_plan):
        with pytest.raises(PlanValidationError, match="duplicate transitions for no_open"):
            load_plan(dup_plan, reject_duplicate_transitions=True)


# ──────────────────────────────────────────────────────────────
#  Event vocabulary
# ──────────────────────────────────────────────────────────────

class TestEventVocabulary:
    @pytest.mark.parametrize("raw,expected", [
        ("open", "opened"),
        ("click", "clicked"),
        ("bounce", "bounced"),
        ("dropped", "blocked"),
        ("spam_report", "spamreport"),
        ("unsubscribe", "unsubscribed"),
        ("delivered", "delivered"),
        ("opened", "opened"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_event_type(raw) == expected

    def test_provider_type_inverts_normalize(self):
        assert provider_event_type("opened") == "open"
        assert provider_event_type("spamreport") == "spam_report"
        assert provider_event_type("click") == "click"

    def test_timeout_types(self):
        assert is_timeout_event("no_open")
        assert is_timeout_event("no_click")
        assert not is_timeout_event("opened")
        assert real_event_for("no_open") == "open"
        assert real_event_for("no_click") == "click"


# ──────────────────────────────────────────────────────────────
#  Durations & quiet hours
# ──────────────────────────────────────────────────────────────

class TestDurations:
    @pytest.mark.parametrize("value,expected", [
        ("PT0S", timedelta(0)),
        ("PT10M", timedelta(minutes=10)),
        ("PT72H", timedelta(hours=72)),
        ("P3D", timedelta(days=3)),
        ("P1DT12H30M", timedelta(days=1, hours=12, minutes=30)),
        ("P1W", timedelta(weeks=1)),
    ])
    def test_parse(self, value, expected):
        assert parse_iso_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "P", "PT", "72H", "P1H", "PTXM", None])
    def test_invalid(self, value):
        assert not is_valid_iso_duration(value)
        with pytest.raises(ValueError):
            parse_iso_duration(value)


class TestQuietHours:
    overnight = QuietHours(start="21:00", end="07:30")

    def test_inside_overnight_window(self):
        late = datetime(2024, 3, 4, 22, 15, tzinfo=timezone.utc)
        early = datetime(2024, 3, 5, 6, 0, tzinfo=timezone.utc)
        assert is_in_quiet_hours(late, "UTC", self.overnight)
        assert is_in_quiet_hours(early, "UTC", self.overnight)
        assert not is_in_quiet_hours(datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc), "UTC", self.overnight)

    def test_evening_pushed_to_next_morning(self):
        late = datetime(2024, 3, 4, 22, 15, tzinfo=timezone.utc)
        assert apply_quiet_hours(late, "UTC", self.overnight) == datetime(2024, 3, 5, 7, 30, tzinfo=timezone.utc)

    def test_early_morning_pushed_to_same_day_end(self):
        early = datetime(2024, 3, 5, 6, 0, tzinfo=timezone.utc)
        assert apply_quiet_hours(early, "UTC", self.overnight) == datetime(2024, 3, 5, 7, 30, tzinfo=timezone.utc)

    def test_window_evaluated_in_plan_timezone(self):
        # 10:00 UTC is 05:00 in New York (EST, UTC-5)
        moment = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)
        assert is_in_quiet_hours(moment, "America/New_York", self.overnight)
        assert not is_in_quiet_hours(moment, "UTC", self.overnight)

    def test_calculate_schedule_time(self):
        base = datetime(2024, 3, 4, 20, 0, tzinfo=timezone.utc)
        assert calculate_schedule_time("PT30M", "UTC", None, base) == base + timedelta(minutes=30)
        assert calculate_schedule_time("PT2H", "UTC", self.overnight, base) == \
            datetime(2024, 3, 5, 7, 30, tzinfo=timezone.utc)

    def test_invalid_delay_sends_immediately(self):
        base = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
        assert calculate_schedule_time("soon", "UTC", None, base) == base
