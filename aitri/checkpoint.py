"""
Git-backed checkpoints.

A checkpoint is a commit `checkpoint: <label> <phase>` over the managed paths,
tagged under `aitri-checkpoint/`. Only the newest N tags are kept. Nothing in
this module raises on git failure; every outcome is a result dict with a
stable `reason` code.
"""

from __future__ import annotations

import re
import subprocess
from datetime import datetime, timezone
from typing import Any

from aitri.config import DEFAULT_CHECKPOINT_MAX, ProjectContext


TAG_NAMESPACE = "aitri-checkpoint"
TAG_PATTERN = f"{TAG_NAMESPACE}/*"
CHECKPOINT_MESSAGE_RE = re.compile(r"^checkpoint:", re.IGNORECASE)
TAG_TIMESTAMP_RE = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z)$")
RESUME_DECISION_ASK = "ask_user_resume_from_checkpoint"
RESUME_DECISION_NONE = "no_checkpoint_detected"
CHECKPOINT_MODE = "git_commit+tag"


def run_git(args: list[str], ctx: ProjectContext) -> tuple[bool, str, str]:
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(ctx.root),
            capture_output=True,
            text=True,
            check=False,
            env=ctx.env or None,
        )
    except OSError as exc:
        return False, "", str(exc)
    if proc.returncode != 0:
        msg = (proc.stderr or proc.stdout).strip() or f"git {args[0]} failed"
        return False, "", msg
    return True, proc.stdout.strip(), ""


def sanitize_tag_part(value: str | None) -> str:
    out = re.sub(r"[^a-z0-9._-]+", "-", str(value or "").lower())
    return out.strip("-")


def checkpoint_timestamp(now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def checkpoint_tag_name(label: str, phase: str, now: datetime | None = None) -> str:
    return f"{TAG_NAMESPACE}/{sanitize_tag_part(label)}-{sanitize_tag_part(phase)}-{checkpoint_timestamp(now)}"


def is_git_work_tree(ctx: ProjectContext) -> bool:
    ok, out, _ = run_git(["rev-parse", "--is-inside-work-tree"], ctx)
    return ok and out == "true"


def _tag_sort_key(tag: str) -> str:
    m = TAG_TIMESTAMP_RE.search(tag)
    return m.group(1) if m else ""


def list_checkpoint_tags(ctx: ProjectContext) -> tuple[list[str], str | None]:
    """Checkpoint tags, newest first."""
    ok, out, err = run_git(
        ["tag", "--list", TAG_PATTERN, "--sort=-creatordate", "--format=%(creatordate:unix) %(refname:short)"],
        ctx,
    )
    if not ok:
        return [], err
    entries: list[tuple[int, str]] = []
    for line in out.splitlines():
        stamp, _, tag = line.strip().partition(" ")
        if tag:
            entries.append((int(stamp) if stamp.isdigit() else 0, tag))
    # creatordate has one-second resolution; within one second the embedded
    # millisecond stamp decides. The sort is stable, so git order holds otherwise.
    entries.sort(key=lambda e: (e[0], _tag_sort_key(e[1])), reverse=True)
    return [tag for _, tag in entries], None


def enforce_retention(ctx: ProjectContext, max_retained: int) -> list[str]:
    tags, err = list_checkpoint_tags(ctx)
    if err is not None:
        return []
    evicted: list[str] = []
    for old_tag in tags[max_retained:]:
        ok, _, _ = run_git(["tag", "-d", old_tag], ctx)
        if ok:
            evicted.append(old_tag)
    return evicted


def run_auto_checkpoint(
    ctx: ProjectContext,
    phase: str,
    feature: str | None = None,
    enabled: bool = True,
    max_retained: int = DEFAULT_CHECKPOINT_MAX,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not enabled:
        return {"performed": False, "reason": "disabled"}
    if not is_git_work_tree(ctx):
        return {"performed": False, "reason": "not_a_repository"}

    managed = [rel for rel in ctx.paths.managed_paths() if (ctx.root / rel).exists()]
    if not managed:
        return {"performed": False, "reason": "no_changes"}

    ok, _, err = run_git(["add", "--", *managed], ctx)
    if not ok:
        return {"performed": False, "reason": "git_add_failed", "detail": err}

    ok, staged, err = run_git(["diff", "--cached", "--name-only"], ctx)
    if not ok:
        return {"performed": False, "reason": "git_diff_failed", "detail": err}
    if not staged:
        return {"performed": False, "reason": "no_changes"}

    label = feature or "project"
    ok, _, err = run_git(["commit", "-m", f"checkpoint: {label} {phase}"], ctx)
    if not ok:
        return {"performed": False, "reason": "git_commit_failed", "detail": err}

    head_ok, head, _ = run_git(["rev-parse", "--short", "HEAD"], ctx)
    tag_name = checkpoint_tag_name(label, phase, now)
    tag_ok, _, tag_err = run_git(["tag", tag_name, "HEAD"], ctx)
    evicted = enforce_retention(ctx, max_retained)

    result: dict[str, Any] = {
        "performed": True,
        "commit": head if head_ok else None,
        "tag": tag_name if tag_ok else None,
        "max": max_retained,
        "staged_files": staged.splitlines(),
        "evicted_tags": evicted,
    }
    if not tag_ok:
        result["tag_error"] = tag_err
    return result


def checkpoint_summary_lines(result: dict[str, Any]) -> list[str]:
    if result.get("performed"):
        commit = result.get("commit")
        return [
            f"Auto-checkpoint saved: {commit}" if commit else "Auto-checkpoint saved",
            f"Checkpoint retention: last {result.get('max')}",
        ]
    reason = result.get("reason")
    if reason == "disabled":
        return ["Auto-checkpoint disabled for this run."]
    if reason == "not_a_repository":
        return [
            "Auto-checkpoint skipped: not a git repository.",
            'Tip: initialize git to enable checkpoints (`git init && git add -A && git commit -m "baseline"`).',
        ]
    if reason == "no_changes":
        return []
    detail = result.get("detail")
    return [f"Auto-checkpoint skipped: {reason}" + (f" ({detail})" if detail else "")]


def read_head_commit(ctx: ProjectContext) -> dict[str, str] | None:
    ok, out, _ = run_git(["log", "-1", "--pretty=format:%h%x1f%cI%x1f%s"], ctx)
    if not ok or not out:
        return None
    parts = out.split("\x1f")
    if len(parts) != 3:
        return None
    return {"hash": parts[0], "timestamp": parts[1], "message": parts[2]}


def detect_checkpoint_state(ctx: ProjectContext, max_retained: int = DEFAULT_CHECKPOINT_MAX) -> dict[str, Any]:
    if not is_git_work_tree(ctx):
        return {
            "git": False,
            "detected": False,
            "latest_commit": None,
            "resume_decision": RESUME_DECISION_NONE,
            "prompt": "No checkpoint was detected.",
        }

    head = read_head_commit(ctx)
    latest = head if head and CHECKPOINT_MESSAGE_RE.match(head["message"]) else None
    tags, _ = list_checkpoint_tags(ctx)
    detected = latest is not None
    return {
        "git": True,
        "detected": detected,
        "mode": CHECKPOINT_MODE,
        "max_retained": max_retained,
        "managed_count": len(tags),
        "latest_managed": tags[:3],
        "latest_commit": latest,
        "resume_decision": RESUME_DECISION_ASK if detected else RESUME_DECISION_NONE,
        "prompt": (
            "Checkpoint detected. Ask user whether to continue from this checkpoint before any write action."
            if detected
            else "No checkpoint was detected."
        ),
    }
