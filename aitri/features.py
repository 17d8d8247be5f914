"""
Feature state resolution and the feature registry.

A feature's lifecycle state is never stored. It is rebuilt on every call from
which artifacts exist on disk, using one fixed precedence order (see
`resolve_state`).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from aitri.paths import ProjectPaths


FEATURE_NAME_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
DEFAULT_QUEUE_PRIORITY = 99


class FeatureState(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    IMPLEMENTATION = "implementation"
    DELIVER_PENDING = "deliver_pending"
    BLOCKED = "blocked"
    DELIVERED = "delivered"
    UNKNOWN = "unknown"


# Every state has an entry; None means "nothing left to do".
STATE_NEXT_COMMAND: dict[FeatureState, str | None] = {
    FeatureState.DRAFT: "aitri approve --feature {feature}",
    FeatureState.APPROVED: "aitri plan --feature {feature}",
    FeatureState.IMPLEMENTATION: "aitri build --feature {feature}",
    FeatureState.DELIVER_PENDING: "aitri deliver --feature {feature}",
    FeatureState.BLOCKED: "aitri go --feature {feature}",
    FeatureState.DELIVERED: None,
    FeatureState.UNKNOWN: "aitri status --feature {feature}",
}


@dataclass(frozen=True)
class Feature:
    name: str
    state: FeatureState
    spec_file: str
    delivered_at: str | None = None
    delivery_decision: str | None = None

    @property
    def next_command(self) -> str | None:
        return feature_next_command(self.state, self.name)

    @property
    def pending(self) -> bool:
        return self.state is not FeatureState.DELIVERED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "spec_file": self.spec_file,
            "delivered_at": self.delivered_at,
            "delivery_decision": self.delivery_decision,
            "next_step": self.next_command,
        }


def normalize_feature_name(value: str | None) -> str:
    raw = str(value or "").strip().lower()
    return raw if FEATURE_NAME_RE.match(raw) else ""


def read_json_safe(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def read_delivery_record(paths: ProjectPaths, feature: str) -> dict[str, Any] | None:
    obj = read_json_safe(paths.delivery_json_file(feature))
    return obj if isinstance(obj, dict) else None


def delivery_decision(record: dict[str, Any] | None) -> str | None:
    if not record:
        return None
    decision = record.get("decision")
    return decision if isinstance(decision, str) and decision else None


def feature_next_command(state: FeatureState, feature: str) -> str | None:
    template = STATE_NEXT_COMMAND[state]
    return template.format(feature=feature) if template else None


def resolve_state(feature: str, paths: ProjectPaths) -> FeatureState:
    """
    Resolve a feature's lifecycle state. First match wins:

    1. delivery decision SHIP -> delivered
    2. delivery decision HOLD -> blocked
    3. go marker present -> deliver_pending if any delivery record file exists,
       implementation otherwise
    4. approved spec -> approved
    5. draft spec -> draft
    6. unknown
    """
    decision = delivery_decision(read_delivery_record(paths, feature))
    if decision == "SHIP":
        return FeatureState.DELIVERED
    if decision == "HOLD":
        return FeatureState.BLOCKED
    if paths.go_marker_file(feature).exists():
        if paths.delivery_json_file(feature).exists():
            return FeatureState.DELIVER_PENDING
        return FeatureState.IMPLEMENTATION
    if paths.approved_spec_file(feature).exists():
        return FeatureState.APPROVED
    if paths.draft_spec_file(feature).exists():
        return FeatureState.DRAFT
    return FeatureState.UNKNOWN


def build_feature(feature: str, paths: ProjectPaths) -> Feature:
    state = resolve_state(feature, paths)
    approved = paths.approved_spec_file(feature)
    spec = approved if approved.exists() else paths.draft_spec_file(feature)
    record = read_delivery_record(paths, feature)
    delivered_at = None
    if state is FeatureState.DELIVERED and record:
        raw = record.get("deliveredAt", record.get("delivered_at"))
        delivered_at = str(raw) if raw else None
    return Feature(
        name=feature,
        state=state,
        spec_file=paths.rel(spec),
        delivered_at=delivered_at,
        delivery_decision=delivery_decision(record),
    )


def _spec_names(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return [p.stem for p in sorted(directory.glob("*.md")) if p.is_file()]


def scan_all(paths: ProjectPaths) -> list[Feature]:
    seen: set[str] = set()
    names: list[str] = []
    for name in _spec_names(paths.specs_drafts_dir) + _spec_names(paths.specs_approved_dir):
        if name in seen:
            continue
        seen.add(name)
        names.append(name)
    return [build_feature(name, paths) for name in names]


def summarize(features: list[Feature]) -> dict[str, int]:
    delivered = sum(1 for f in features if f.state is FeatureState.DELIVERED)
    draft = sum(1 for f in features if f.state is FeatureState.DRAFT)
    return {
        "total": len(features),
        "delivered": delivered,
        "in_progress": len(features) - delivered - draft,
        "draft": draft,
    }


def load_queue(paths: ProjectPaths) -> list[dict[str, Any]]:
    obj = read_json_safe(paths.project_queue_file)
    if not isinstance(obj, dict):
        return []
    entries = obj.get("queue")
    if not isinstance(entries, list):
        return []
    return [e for e in entries if isinstance(e, dict) and isinstance(e.get("feature"), str)]


def _queue_priority(entry: dict[str, Any]) -> float:
    value = entry.get("priority")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_QUEUE_PRIORITY
    return value


def select_next(features: list[Feature], queue: list[dict[str, Any]] | None = None) -> Feature | None:
    pending = [f for f in features if f.pending]
    if not pending:
        return None

    if queue:
        priorities: dict[str, float] = {}
        for entry in queue:
            name = entry["feature"]
            priority = _queue_priority(entry)
            priorities[name] = min(priorities[name], priority) if name in priorities else priority
        queued = [f for f in pending if f.name in priorities]
        if queued:
            # sorted() is stable, so equal priorities keep discovery order.
            return sorted(queued, key=lambda f: priorities[f.name])[0]

    drafts = [f for f in pending if f.state is FeatureState.DRAFT]
    return drafts[0] if drafts else pending[0]
