import json
from datetime import timedelta

from core.models import Action, FlowStep, FlowTemplate, RecurrenceMeta, RecurrenceRule, parse_iso
from core.state_store import (
    ActionStore, FlowTemplateStore, JsonFileBackend, MemoryBackend, RecurrenceStore, open_file_stores,
)

AT = parse_iso("2024-01-15T09:00:00Z")


def test_action_file_format(tmp_path):
    path = tmp_path / "actions.json"
    store = ActionStore(JsonFileBackend(str(path), list))
    action = Action(broadcast_id="bc1", at=AT, type="setScene", payload={"sceneName": "live"}, id="a1")

    store.upsert(action)

    assert json.loads(path.read_text()) == [{
        "id": "a1",
        "broadcastId": "bc1",
        "at": "2024-01-15T09:00:00.000Z",
        "type": "setScene",
        "payload": {"sceneName": "live"},
    }]
    assert ActionStore(JsonFileBackend(str(path), list)).get("a1") == action


def test_actions_sorted_and_grouped():
    store = ActionStore(MemoryBackend(default_factory=list))
    late = Action(broadcast_id="bc1", at=AT + timedelta(hours=1), type="end")
    early = Action(broadcast_id="bc1", at=AT, type="start")
    other = Action(broadcast_id="bc2", at=AT, type="start")
    store.upsert_many([late, early, other])

    assert store.for_broadcast("bc1") == [early, late]
    assert store.remove_many([late.id, "missing"]) == [late]
    assert store.remove("missing") is None
    assert [a.id for a in store.all()] == [early.id, other.id]


def test_malformed_action_records_are_skipped():
    backend = MemoryBackend([
        {"id": "a1", "broadcastId": "bc1", "at": "2024-01-15T09:00:00Z", "type": "start"},
        {"id": "a2", "type": "start"},
        {"id": "a3", "broadcastId": "bc1", "at": "not a date", "type": "start"},
    ])

    store = ActionStore(backend)

    assert [a.id for a in store.all()] == ["a1"]


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "actions.json"
    path.write_text("{not json")

    assert ActionStore(JsonFileBackend(str(path), list)).all() == []


def test_recurrence_move_rekeys_in_one_flush():
    backend = MemoryBackend(default_factory=dict)
    store = RecurrenceStore(backend)
    rule = RecurrenceRule(recurring=True, days=[1, 3], base_time=AT, meta=RecurrenceMeta(title="Show"))
    store.upsert("old", rule)
    saves = backend.saves

    store.move("old", "new", rule)

    assert backend.saves == saves + 1
    assert set(backend.data) == {"new"}
    assert backend.data["new"]["baseTime"] == "2024-01-15T09:00:00.000Z"
    assert backend.data["new"]["meta"]["title"] == "Show"


def test_recurrence_days_are_normalized():
    store = RecurrenceStore(MemoryBackend({
        "bc1": {"recurring": True, "days": [5, 1, 9, 1], "baseTime": "2024-01-15T09:00:00Z"},
        "bc2": {"recurring": True, "days": [1]},
    }))

    assert store.get("bc1").days == [1, 5]
    assert store.get("bc2") is None


def test_flow_template_round_trip(tmp_path):
    _, _, flow = open_file_stores(str(tmp_path))
    flow.save(FlowTemplate(steps=[FlowStep(0, "start"), FlowStep(60, "setScene", {"sceneName": "live"})],
                           updated_at=AT, base_at=AT))

    reloaded = open_file_stores(str(tmp_path))[2].get()

    assert [(s.offset_sec, s.type, s.payload) for s in reloaded.steps] == [
        (0, "start", {}), (60, "setScene", {"sceneName": "live"}),
    ]
    assert reloaded.base_at == AT
    raw = json.loads((tmp_path / "scene_flow.json").read_text())
    assert raw["steps"][1] == {"offsetSec": 60, "type": "setScene", "payload": {"sceneName": "live"}}


def test_missing_files_start_empty(tmp_path):
    actions, rules, flow = open_file_stores(str(tmp_path / "fresh"))

    assert actions.all() == []
    assert rules.all() == {}
    assert flow.get().steps == []


def test_flow_template_get_returns_copy():
    store = FlowTemplateStore(MemoryBackend(default_factory=dict))
    store.save(FlowTemplate(steps=[FlowStep(0, "start")]))

    store.get().steps.append(FlowStep(1, "end"))

    assert len(store.get().steps) == 1
