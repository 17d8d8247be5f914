from __future__ import annotations

import json
import sys
from pathlib import Path

from conftest import (
    git_out,
    init_git_repo,
    load_json,
    run_aitri,
    write_config,
    write_delivery,
    write_plan,
    write_queue,
    write_spec,
)


def test_help(tmp_path: Path) -> None:
    proc = run_aitri(tmp_path, "help")
    assert "Spec-driven workflow CLI." in proc.stdout


def test_status_on_empty_project_recommends_init(tmp_path: Path) -> None:
    proc = run_aitri(tmp_path, "status", "--format", "json")
    payload = json.loads(proc.stdout)
    assert payload["structure"]["ok"] is False
    assert payload["next_step"] == "init"
    assert payload["recommended_command"] == "aitri init"
    assert payload["feature"] is None
    assert payload["checkpoint"]["state"]["git"] is False


def test_status_with_draft_recommends_approve(project: Path) -> None:
    write_spec(project, "user-login")
    payload = json.loads(run_aitri(project, "status", "--format", "json").stdout)
    assert payload["next_step"] == "approve"
    assert payload["recommended_command"] == "aitri approve --feature user-login"
    assert payload["selection"] == {"feature": "user-login", "source": "registry"}
    assert payload["features_summary"]["draft"] == 1

    text = run_aitri(project, "status").stdout
    assert "feature: user-login (draft)" in text
    assert "recommended_command: aitri approve --feature user-login" in text


def test_status_for_delivered_project(project: Path) -> None:
    write_spec(project, "x", approved=True)
    write_delivery(project, "x", {"decision": "SHIP", "deliveredAt": "2026-02-01T10:00:00Z", "releaseTag": "v1.0.0"})
    payload = json.loads(run_aitri(project, "status", "--format", "json").stdout)
    assert payload["next_step"] == "delivery_complete"
    assert payload["recommended_command"] is None
    assert payload["delivery"]["decision"] == "SHIP"
    assert payload["delivery"]["release_tag"] == "v1.0.0"


def test_features_json_and_text(project: Path) -> None:
    write_spec(project, "a")
    write_spec(project, "b", approved=True)
    write_delivery(project, "b", {"decision": "SHIP"})

    payload = json.loads(run_aitri(project, "features", "--format", "json").stdout)
    assert payload["ok"] is True
    assert [(f["name"], f["state"]) for f in payload["features"]] == [("a", "draft"), ("b", "delivered")]
    assert payload["summary"] == {"total": 2, "delivered": 1, "in_progress": 0, "draft": 1}

    text = run_aitri(project, "features").stdout
    assert "Total: 2 features (1 delivered, 1 draft)" in text
    assert "(complete)" in text


def test_features_empty(project: Path) -> None:
    assert "No features found." in run_aitri(project, "features").stdout


def test_next_respects_queue(project: Path) -> None:
    write_spec(project, "a")
    write_spec(project, "b", approved=True)
    write_queue(project, [{"feature": "b", "priority": 1}])

    proc = run_aitri(project, "next", "--non-interactive")
    assert "Next: b (approved)" in proc.stdout
    assert "Run: aitri plan --feature b" in proc.stdout

    payload = json.loads(run_aitri(project, "next", "--format", "json").stdout)
    assert payload["feature"]["name"] == "b"
    assert payload["command"] == "aitri plan --feature b"


def test_next_when_all_delivered(project: Path) -> None:
    write_spec(project, "a", approved=True)
    write_delivery(project, "a", {"decision": "SHIP"})
    assert "All features are delivered." in run_aitri(project, "next").stdout


def test_init_requires_yes_when_non_interactive(tmp_path: Path) -> None:
    proc = run_aitri(tmp_path, "init", "--non-interactive", expect_code=1)
    assert "Non-interactive mode requires --yes to proceed." in proc.stdout
    assert not (tmp_path / "specs").exists()


def test_init_creates_structure_and_checkpoint(tmp_path: Path) -> None:
    init_git_repo(tmp_path)
    proc = run_aitri(tmp_path, "init", "--yes")
    assert "Project initialized" in proc.stdout
    assert "Auto-checkpoint saved" in proc.stdout
    for rel in ("specs/drafts", "specs/approved", "backlog", "tests", "docs"):
        assert (tmp_path / rel).is_dir()
    assert git_out(tmp_path, "log", "-1", "--pretty=%s") == "checkpoint: project init"
    assert git_out(tmp_path, "tag", "--list", "aitri-checkpoint/*").startswith("aitri-checkpoint/project-init-")


def test_init_outside_git_prints_tip(tmp_path: Path) -> None:
    proc = run_aitri(tmp_path, "init", "--yes")
    assert "Auto-checkpoint skipped: not a git repository." in proc.stdout


def test_approve_moves_spec_and_checkpoints(git_project: Path) -> None:
    write_spec(git_project, "user-login")
    proc = run_aitri(git_project, "approve", "--feature", "user-login", "--yes")
    assert "Spec approved: specs/approved/user-login.md" in proc.stdout

    approved = git_project / "specs" / "approved" / "user-login.md"
    assert approved.exists()
    assert "STATUS: APPROVED" in approved.read_text(encoding="utf-8")
    assert not (git_project / "specs" / "drafts" / "user-login.md").exists()
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "checkpoint: user-login approve"

    payload = json.loads(run_aitri(git_project, "status", "--format", "json").stdout)
    assert payload["next_step"] == "plan"
    assert payload["checkpoint"]["state"]["resume_decision"] == "ask_user_resume_from_checkpoint"


def test_approve_without_checkpoint_flag(git_project: Path) -> None:
    write_spec(git_project, "x")
    run_aitri(git_project, "approve", "--feature", "x", "--yes", "--no-checkpoint")
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "baseline"


def test_approve_json_output_keeps_stdout_parseable(git_project: Path) -> None:
    write_spec(git_project, "x")
    proc = run_aitri(git_project, "approve", "--feature", "x", "--yes", "--format", "json")
    payload = json.loads(proc.stdout)
    assert payload == {"ok": True, "feature": "x", "approved_spec": "specs/approved/x.md"}
    assert "Auto-checkpoint saved" in proc.stderr


def test_approve_gate_requires_draft_marker(project: Path) -> None:
    path = project / "specs" / "drafts" / "x.md"
    path.write_text("# no marker\n", encoding="utf-8")
    proc = run_aitri(project, "approve", "--feature", "x", "--yes", expect_code=1)
    assert "GATE FAILED:" in proc.stderr
    assert path.exists()


def test_approve_missing_draft(project: Path) -> None:
    proc = run_aitri(project, "approve", "--feature", "nope", "--yes", expect_code=1)
    assert "Draft spec not found: specs/drafts/nope.md" in proc.stderr


def test_go_requires_plan(project: Path) -> None:
    write_spec(project, "x", approved=True)
    proc = run_aitri(project, "go", "--feature", "x", "--yes", expect_code=1)
    assert "GO BLOCKED" in proc.stderr


def test_go_writes_marker_and_moves_to_implementation(project: Path) -> None:
    write_spec(project, "x", approved=True)
    write_plan(project, "x")

    payload = json.loads(run_aitri(project, "status", "--format", "json").stdout)
    assert payload["next_step"] == "ready_for_human_approval"
    assert payload["recommended_command"] == "aitri go --feature x"

    run_aitri(project, "go", "--feature", "x", "--yes")
    marker = load_json(project / "docs" / "implementation" / "x" / "go.json")
    assert marker["feature"] == "x"
    assert marker["ok"] is True

    payload = json.loads(run_aitri(project, "status", "--format", "json").stdout)
    assert payload["feature"]["state"] == "implementation"
    assert payload["next_step"] == "write_implementation_code"


def test_go_on_delivered_feature_is_refused(project: Path) -> None:
    write_spec(project, "x", approved=True)
    write_delivery(project, "x", {"decision": "SHIP"})
    proc = run_aitri(project, "go", "--feature", "x", "--yes", expect_code=1)
    assert "state `delivered`" in proc.stderr


def test_resume_without_checkpoint(git_project: Path) -> None:
    payload = json.loads(run_aitri(git_project, "resume", "--format", "json").stdout)
    assert payload["checkpoint_detected"] is False
    assert payload["resume_decision"] == "no_checkpoint_detected"


def test_resume_with_checkpoint_needs_confirmation(git_project: Path) -> None:
    write_spec(git_project, "x")
    run_aitri(git_project, "checkpoint", "--label", "x", "--phase", "draft")

    payload = json.loads(run_aitri(git_project, "resume", "--format", "json").stdout)
    assert payload["checkpoint_detected"] is True
    assert payload["resume_decision"] == "ask_user_resume_from_checkpoint"

    proc = run_aitri(git_project, "resume", "--non-interactive", expect_code=1)
    assert "Non-interactive mode requires --yes" in proc.stdout

    proc = run_aitri(git_project, "resume", "--non-interactive", "--yes")
    assert "Resume decision: CONTINUE." in proc.stdout
    assert "Recommended next command: aitri approve --feature x" in proc.stdout


def test_checkpoint_list(git_project: Path) -> None:
    write_spec(git_project, "x")
    run_aitri(git_project, "checkpoint", "--label", "x")
    payload = json.loads(run_aitri(git_project, "checkpoint", "--list", "--format", "json").stdout)
    assert len(payload["tags"]) == 1
    assert payload["tags"][0].startswith("aitri-checkpoint/x-manual-")
    assert payload["max_retained"] == 10


def test_external_command_runs_and_checkpoints(git_project: Path) -> None:
    script = (
        "import pathlib, sys; "
        "f = sys.argv[sys.argv.index('--feature') + 1]; "
        "p = pathlib.Path('docs/plan') / (f + '.md'); "
        "p.parent.mkdir(parents=True, exist_ok=True); "
        "p.write_text('# plan\\n'); "
        "print('plan written', '--yes' in sys.argv)"
    )
    write_config(git_project, {"commands": {"plan": [sys.executable, "-c", script]}})
    write_spec(git_project, "x", approved=True)

    proc = run_aitri(git_project, "plan", "--feature", "x", "--yes")
    assert "plan written True" in proc.stdout
    assert (git_project / "docs" / "plan" / "x.md").exists()
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "checkpoint: x plan"


def test_failing_external_command_skips_checkpoint(git_project: Path) -> None:
    write_config(git_project, {"commands": {"deliver": [sys.executable, "-c", "raise SystemExit(2)"]}})
    write_spec(git_project, "x", approved=True)
    run_aitri(git_project, "deliver", "--feature", "x", "--yes", expect_code=2)
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "baseline"


def test_unknown_command(project: Path) -> None:
    proc = run_aitri(project, "frobnicate", expect_code=1)
    assert "unknown command: frobnicate" in proc.stderr


def test_invalid_config_is_reported(project: Path) -> None:
    write_config(project, {"paths": {"specs": "../elsewhere"}})
    proc = run_aitri(project, "status", expect_code=1)
    assert proc.stderr.startswith("config_error: Invalid aitri.config.json:")
    assert 'paths.specs must not contain "..".' in proc.stderr


def test_approve_without_feature_labels_checkpoint_with_selected_feature(git_project: Path) -> None:
    write_spec(git_project, "user-login")
    run_aitri(git_project, "approve", "--yes")
    assert (git_project / "specs" / "approved" / "user-login.md").exists()
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "checkpoint: user-login approve"
    assert git_out(git_project, "tag", "--list", "aitri-checkpoint/*").startswith(
        "aitri-checkpoint/user-login-approve-"
    )


def test_go_without_feature_labels_checkpoint_with_selected_feature(git_project: Path) -> None:
    write_spec(git_project, "search", approved=True)
    write_plan(git_project, "search")
    run_aitri(git_project, "go", "--yes")
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "checkpoint: search go"


def test_checkpoint_label_is_kept_and_sanitized_in_tag(git_project: Path) -> None:
    write_spec(git_project, "x")
    run_aitri(git_project, "checkpoint", "--label", "User Login")
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "checkpoint: User Login manual"
    assert git_out(git_project, "tag", "--list", "aitri-checkpoint/*").startswith(
        "aitri-checkpoint/user-login-manual-"
    )


def test_checkpoint_label_without_tag_characters_is_rejected(git_project: Path) -> None:
    write_spec(git_project, "x")
    proc = run_aitri(git_project, "checkpoint", "--label", "!!!", expect_code=1)
    assert "Invalid checkpoint label" in proc.stderr
    assert git_out(git_project, "log", "-1", "--pretty=%s") == "baseline"
