"""Definition and instance persistence.

Two flavours of each store: in-memory (tests, embedding) and JSON files on
disk. The file stores keep instances in one JSON document keyed by id and
append log entries to a JSON-lines file, so log writes never rewrite history.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from process_engine.engine.workflow.errors import DefinitionError, PersistenceError
from process_engine.engine.workflow.models import WorkflowDefinition, WorkflowInstance, WorkflowLog


class DefinitionStore(Protocol):
    def get_definition(self, definition_id: str) -> WorkflowDefinition | None: ...


class InstanceStore(Protocol):
    def load_instance(self, instance_id: str) -> WorkflowInstance | None: ...

    def save_instance(self, instance: WorkflowInstance) -> None: ...

    def list_instances(self) -> list[WorkflowInstance]: ...

    def append_log(self, entry: WorkflowLog) -> None: ...

    def list_logs(self, instance_id: str) -> list[WorkflowLog]: ...

    def last_log_sequence(self) -> int: ...


class InMemoryDefinitionStore:
    def __init__(self, definitions: list[WorkflowDefinition] | None = None) -> None:
        self._lock = threading.Lock()
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._definitions[definition.id] = definition

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._definitions.get(definition_id)


def load_definition_file(path: Path) -> WorkflowDefinition:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise DefinitionError(path.stem, [f"cannot read {path}: {e}"]) from e
    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        raise DefinitionError(str(raw.get("id", path.stem)) if isinstance(raw, dict) else path.stem, [str(e)]) from e


@dataclass
class FileDefinitionStore:
    """Reads ``<directory>/*.json``, one definition per file.

    Files are read on every lookup so a designer can publish new versions
    without restarting the engine.
    """

    directory: Path

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        direct = self.directory / f"{definition_id}.json"
        if direct.exists():
            definition = load_definition_file(direct)
            if definition.id == definition_id:
                return definition
        for definition in self.list():
            if definition.id == definition_id:
                return definition
        return None

    def list(self) -> list[WorkflowDefinition]:
        if not self.directory.exists():
            return []
        return [load_definition_file(p) for p in sorted(self.directory.glob("*.json"))]


class InMemoryInstanceStore:
    """Keeps deep copies so callers never share state with the store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instances: dict[str, WorkflowInstance] = {}
        self._logs: list[WorkflowLog] = []

    def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def save_instance(self, instance: WorkflowInstance) -> None:
        with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)

    def list_instances(self) -> list[WorkflowInstance]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._instances.values()]

    def append_log(self, entry: WorkflowLog) -> None:
        with self._lock:
            self._logs.append(entry)

    def list_logs(self, instance_id: str) -> list[WorkflowLog]:
        with self._lock:
            return [e for e in self._logs if e.instance_id == instance_id]

    def last_log_sequence(self) -> int:
        with self._lock:
            return max((e.sequence for e in self._logs), default=0)


@dataclass
class JsonInstanceStore:
    """Instances in ``instances.json``, audit entries in ``logs.jsonl``."""

    directory: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def instances_file(self) -> Path:
        return self.directory / "instances.json"

    @property
    def logs_file(self) -> Path:
        return self.directory / "logs.jsonl"

    def _load_unlocked(self) -> dict[str, WorkflowInstance]:
        if not self.instances_file.exists():
            return {}
        try:
            raw = json.loads(self.instances_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read {self.instances_file}: {e}") from e
        if not isinstance(raw, dict):
            return {}
        return {key: WorkflowInstance.model_validate(item) for key, item in raw.items()}

    def _save_unlocked(self, instances: dict[str, WorkflowInstance]) -> None:
        try:
            payload = {key: inst.model_dump(mode="json") for key, inst in instances.items()}
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot serialize instances for {self.instances_file}: {e}") from e
        tmp = self.instances_file.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
            tmp.replace(self.instances_file)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.instances_file}: {e}") from e

    def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            return self._load_unlocked().get(instance_id)

    def save_instance(self, instance: WorkflowInstance) -> None:
        with self._lock:
            instances = self._load_unlocked()
            instances[instance.id] = instance
            self._save_unlocked(instances)

    def list_instances(self) -> list[WorkflowInstance]:
        with self._lock:
            return list(self._load_unlocked().values())

    def _read_logs_unlocked(self) -> list[WorkflowLog]:
        if not self.logs_file.exists():
            return []
        entries: list[WorkflowLog] = []
        with self.logs_file.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(WorkflowLog.model_validate_json(line))
                except ValidationError:
                    # A torn last line from a crash mid-append.
                    continue
        return entries

    def append_log(self, entry: WorkflowLog) -> None:
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                with self.logs_file.open("a", encoding="utf-8") as fh:
                    fh.write(entry.model_dump_json() + "\n")
            except OSError as e:
                raise PersistenceError(f"Cannot append to {self.logs_file}: {e}") from e

    def list_logs(self, instance_id: str) -> list[WorkflowLog]:
        with self._lock:
            return [e for e in self._read_logs_unlocked() if e.instance_id == instance_id]

    def last_log_sequence(self) -> int:
        with self._lock:
            return max((e.sequence for e in self._read_logs_unlocked()), default=0)
