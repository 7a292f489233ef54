"""Persisted scheduler state: actions, recurrence rules and the flow template.

Each store owns one flat JSON document, keeps it in memory, and flushes
to its backend synchronously on every mutation.  Backends are pluggable so
tests can swap the file backend for ``MemoryBackend``.
"""
import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.constants import ACTIONS_FILE, RECURRING_FILE, SCENE_FLOW_FILE
from core.models import Action, FlowTemplate, RecurrenceRule

logger = logging.getLogger(__name__)


class JsonFileBackend:
    """Reads and atomically rewrites a single JSON file."""

    def __init__(self, path: str, default_factory: Callable[[], Any]):
        self.path = path
        self._default_factory = default_factory

    def load(self) -> Any:
        if not os.path.exists(self.path):
            return self._default_factory()
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except Exception as e:
            logger.error(f"Failed to load {self.path}, starting empty: {e}")
            return self._default_factory()

    def save(self, data: Any) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=directory, delete=False, encoding="utf-8", suffix=".tmp"
        ) as tmp:
            json.dump(data, tmp, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = tmp.name
        os.replace(temp_path, self.path)


class MemoryBackend:
    """In-process backend; ``saves`` counts flushes for assertions."""

    def __init__(self, initial: Any = None, default_factory: Callable[[], Any] = list):
        self._data = json.loads(json.dumps(initial)) if initial is not None else default_factory()
        self.saves = 0

    def load(self) -> Any:
        return json.loads(json.dumps(self._data))

    def save(self, data: Any) -> None:
        self._data = json.loads(json.dumps(data))
        self.saves += 1

    @property
    def data(self) -> Any:
        return self._data


class ActionStore:
    """Array of Action records (``actions.json``)."""

    def __init__(self, backend):
        self._backend = backend
        self._lock = threading.RLock()
        self._actions: Dict[str, Action] = {}
        for raw in backend.load() or []:
            try:
                action = Action.from_dict(raw)
                self._actions[action.id] = action
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed action record {raw!r}: {e}")

    def _flush(self) -> None:
        self._backend.save([a.to_dict() for a in self._actions.values()])

    def all(self) -> List[Action]:
        with self._lock:
            return sorted(self._actions.values(), key=lambda a: a.at)

    def get(self, action_id: str) -> Optional[Action]:
        with self._lock:
            return self._actions.get(action_id)

    def for_broadcast(self, broadcast_id: str) -> List[Action]:
        with self._lock:
            return sorted(
                (a for a in self._actions.values() if a.broadcast_id == broadcast_id),
                key=lambda a: a.at,
            )

    def upsert(self, action: Action) -> None:
        with self._lock:
            self._actions[action.id] = action
            self._flush()

    def upsert_many(self, actions: Iterable[Action]) -> None:
        with self._lock:
            for action in actions:
                self._actions[action.id] = action
            self._flush()

    def remove(self, action_id: str) -> Optional[Action]:
        with self._lock:
            removed = self._actions.pop(action_id, None)
            if removed is not None:
                self._flush()
            return removed

    def remove_many(self, action_ids: Iterable[str]) -> List[Action]:
        with self._lock:
            removed = [self._actions.pop(i) for i in list(action_ids) if i in self._actions]
            if removed:
                self._flush()
            return removed

    def replace_all(self, actions: Iterable[Action]) -> None:
        with self._lock:
            self._actions = {a.id: a for a in actions}
            self._flush()


class RecurrenceStore:
    """Map of RecurrenceRule keyed by broadcast id (``recurring.json``)."""

    def __init__(self, backend):
        self._backend = backend
        self._lock = threading.RLock()
        self._rules: Dict[str, RecurrenceRule] = {}
        for broadcast_id, raw in (backend.load() or {}).items():
            try:
                self._rules[broadcast_id] = RecurrenceRule.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed recurrence rule for {broadcast_id}: {e}")

    def _flush(self) -> None:
        self._backend.save({bid: rule.to_dict() for bid, rule in self._rules.items()})

    def all(self) -> Dict[str, RecurrenceRule]:
        with self._lock:
            return dict(self._rules)

    def get(self, broadcast_id: str) -> Optional[RecurrenceRule]:
        with self._lock:
            return self._rules.get(broadcast_id)

    def upsert(self, broadcast_id: str, rule: RecurrenceRule) -> None:
        with self._lock:
            self._rules[broadcast_id] = rule
            self._flush()

    def remove(self, broadcast_id: str) -> Optional[RecurrenceRule]:
        with self._lock:
            removed = self._rules.pop(broadcast_id, None)
            if removed is not None:
                self._flush()
            return removed

    def move(self, old_id: str, new_id: str, rule: RecurrenceRule) -> None:
        """Re-key a rule in a single flush."""
        with self._lock:
            self._rules.pop(old_id, None)
            self._rules[new_id] = rule
            self._flush()

    def replace_all(self, rules: Dict[str, RecurrenceRule]) -> None:
        with self._lock:
            self._rules = dict(rules)
            self._flush()


class FlowTemplateStore:
    """The single global flow template (``scene_flow.json``)."""

    def __init__(self, backend):
        self._backend = backend
        self._lock = threading.RLock()
        raw = backend.load() or {}
        try:
            self._template = FlowTemplate.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed flow template: {e}")
            self._template = FlowTemplate()

    def get(self) -> FlowTemplate:
        with self._lock:
            return FlowTemplate(
                steps=list(self._template.steps),
                updated_at=self._template.updated_at,
                base_at=self._template.base_at,
            )

    def save(self, template: FlowTemplate) -> None:
        with self._lock:
            self._template = template
            self._backend.save(template.to_dict())


def open_file_stores(data_dir: str):
    """Build the three stores backed by JSON files under ``data_dir``."""
    actions = ActionStore(JsonFileBackend(os.path.join(data_dir, ACTIONS_FILE), list))
    recurring = RecurrenceStore(JsonFileBackend(os.path.join(data_dir, RECURRING_FILE), dict))
    flow = FlowTemplateStore(
        JsonFileBackend(os.path.join(data_dir, SCENE_FLOW_FILE), lambda: {"updatedAt": None, "steps": []})
    )
    return actions, recurring, flow


def open_memory_stores():
    """Build the three stores backed by memory (tests, dry runs)."""
    return (
        ActionStore(MemoryBackend(default_factory=list)),
        RecurrenceStore(MemoryBackend(default_factory=dict)),
        FlowTemplateStore(MemoryBackend(default_factory=dict)),
    )
