from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from aitri.config import ProjectContext, build_project_context


REPO_ROOT = Path(__file__).resolve().parents[1]


def clean_env() -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith(("AITRI_", "GIT_AUTHOR_", "GIT_COMMITTER_"))}
    env["PYTHONPATH"] = str(REPO_ROOT) + os.pathsep + env.get("PYTHONPATH", "")
    return env


def run_cmd(args: list[str], cwd: Path, expect_code: int = 0) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        args,
        cwd=str(cwd),
        text=True,
        capture_output=True,
        check=False,
        env=clean_env(),
        stdin=subprocess.DEVNULL,
    )
    if proc.returncode != expect_code:
        raise AssertionError(
            f"command failed\ncwd={cwd}\nargs={args}\n"
            f"expected={expect_code} got={proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n\nstderr:\n{proc.stderr}"
        )
    return proc


def run_aitri(project_dir: Path, *aitri_args: str, expect_code: int = 0) -> subprocess.CompletedProcess[str]:
    args = [sys.executable, "-m", "aitri.cli", *aitri_args, "--project-dir", str(project_dir)]
    return run_cmd(args, cwd=REPO_ROOT, expect_code=expect_code)


def init_git_repo(path: Path) -> None:
    run_cmd(["git", "init"], cwd=path)
    run_cmd(["git", "config", "user.email", "test@example.com"], cwd=path)
    run_cmd(["git", "config", "user.name", "Aitri Test"], cwd=path)
    run_cmd(["git", "config", "commit.gpgsign", "false"], cwd=path)
    run_cmd(["git", "config", "tag.gpgsign", "false"], cwd=path)


def make_structure(project_dir: Path) -> None:
    for rel in ("specs/drafts", "specs/approved", "backlog", "tests", "docs"):
        directory = project_dir / rel
        directory.mkdir(parents=True, exist_ok=True)
        (directory / ".gitkeep").write_text("", encoding="utf-8")


def write_spec(project_dir: Path, feature: str, approved: bool = False) -> Path:
    sub = "approved" if approved else "drafts"
    marker = "STATUS: APPROVED" if approved else "STATUS: DRAFT"
    path = project_dir / "specs" / sub / f"{feature}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"# AF-SPEC: {feature}\n{marker}\n\n## 1. Context\nDemo.\n", encoding="utf-8")
    return path


def write_plan(project_dir: Path, feature: str) -> Path:
    path = project_dir / "docs" / "plan" / f"{feature}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"# Plan: {feature}\n", encoding="utf-8")
    return path


def write_go_marker(project_dir: Path, feature: str) -> Path:
    path = project_dir / "docs" / "implementation" / feature / "go.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"ok": True, "feature": feature}), encoding="utf-8")
    return path


def write_delivery(project_dir: Path, feature: str, payload: dict | str) -> Path:
    path = project_dir / "docs" / "delivery" / f"{feature}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2)
    path.write_text(text, encoding="utf-8")
    return path


def write_queue(project_dir: Path, entries: list[dict]) -> Path:
    path = project_dir / "docs" / "project-queue.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"queue": entries}, indent=2), encoding="utf-8")
    return path


def write_config(project_dir: Path, payload: dict | str) -> Path:
    path = project_dir / "aitri.config.json"
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2)
    path.write_text(text, encoding="utf-8")
    return path


def context_for(project_dir: Path, env: dict[str, str] | None = None) -> ProjectContext:
    return build_project_context(project_dir, env=env if env is not None else {})


def git_out(project_dir: Path, *args: str) -> str:
    return run_cmd(["git", *args], cwd=project_dir).stdout.strip()


def clear_git_identity(project_dir: Path) -> None:
    # Local empty values override any global identity, so commits fail.
    run_cmd(["git", "config", "user.name", ""], cwd=project_dir)
    run_cmd(["git", "config", "user.email", ""], cwd=project_dir)
    run_cmd(["git", "config", "user.useConfigOnly", "true"], cwd=project_dir)


def bootstrap_git_project(project_dir: Path) -> None:
    project_dir.mkdir(parents=True, exist_ok=True)
    init_git_repo(project_dir)
    make_structure(project_dir)
    (project_dir / "README.md").write_text("# demo\n", encoding="utf-8")

    # Baseline commit so checkpoint diffs are meaningful.
    run_cmd(["git", "add", "."], cwd=project_dir)
    run_cmd(["git", "commit", "-m", "baseline"], cwd=project_dir)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    project_dir = tmp_path / "proj"
    make_structure(project_dir)
    return project_dir


@pytest.fixture(scope="session")
def git_project_template(tmp_path_factory: pytest.TempPathFactory) -> Path:
    template_root = tmp_path_factory.mktemp("git_project_template")
    project_dir = template_root / "proj"
    bootstrap_git_project(project_dir)
    return project_dir


@pytest.fixture()
def git_project(tmp_path: Path, git_project_template: Path) -> Path:
    project_dir = tmp_path / "proj"
    shutil.copytree(git_project_template, project_dir)
    return project_dir


def load_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))
