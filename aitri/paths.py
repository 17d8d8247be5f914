"""
Canonical artifact locations for an aitri project.

Every per-feature file the workflow reads is derived here from the project root
and the four mapped roots (specs, backlog, tests, docs).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_PATHS = {
    "specs": "specs",
    "backlog": "backlog",
    "tests": "tests",
    "docs": "docs",
}
PATH_KEYS = tuple(DEFAULT_PATHS)
QUEUE_FILE = "project-queue.json"


@dataclass(frozen=True)
class ProjectPaths:
    root: Path
    mapped: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PATHS))

    @property
    def specs_root(self) -> Path:
        return self.root / self.mapped["specs"]

    @property
    def backlog_root(self) -> Path:
        return self.root / self.mapped["backlog"]

    @property
    def tests_root(self) -> Path:
        return self.root / self.mapped["tests"]

    @property
    def docs_root(self) -> Path:
        return self.root / self.mapped["docs"]

    @property
    def specs_drafts_dir(self) -> Path:
        return self.specs_root / "drafts"

    @property
    def specs_approved_dir(self) -> Path:
        return self.specs_root / "approved"

    @property
    def project_queue_file(self) -> Path:
        return self.docs_root / QUEUE_FILE

    def draft_spec_file(self, feature: str) -> Path:
        return self.specs_drafts_dir / f"{feature}.md"

    def approved_spec_file(self, feature: str) -> Path:
        return self.specs_approved_dir / f"{feature}.md"

    def discovery_file(self, feature: str) -> Path:
        return self.docs_root / "discovery" / f"{feature}.md"

    def plan_file(self, feature: str) -> Path:
        return self.docs_root / "plan" / f"{feature}.md"

    def backlog_file(self, feature: str) -> Path:
        return self.backlog_root / feature / "backlog.md"

    def tests_file(self, feature: str) -> Path:
        return self.tests_root / feature / "tests.md"

    def verification_file(self, feature: str) -> Path:
        return self.docs_root / "verification" / f"{feature}.json"

    def go_marker_file(self, feature: str) -> Path:
        return self.docs_root / "implementation" / feature / "go.json"

    def delivery_json_file(self, feature: str) -> Path:
        return self.docs_root / "delivery" / f"{feature}.json"

    def feedback_file(self, feature: str) -> Path:
        return self.docs_root / "feedback" / f"{feature}.json"

    def managed_paths(self) -> list[str]:
        """Project-relative roots a checkpoint is allowed to stage."""
        out: list[str] = []
        for key in PATH_KEYS:
            value = self.mapped[key].strip()
            if value and value not in out:
                out.append(value)
        return out

    def rel(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)


def resolve_project_paths(root: Path, mapped: dict[str, str] | None = None) -> ProjectPaths:
    merged = dict(DEFAULT_PATHS)
    if mapped:
        merged.update(mapped)
    return ProjectPaths(root=root, mapped=merged)
