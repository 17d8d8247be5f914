#!/usr/bin/env python3
"""
aitri

Spec-driven workflow CLI: resolves feature lifecycle state from artifacts,
checkpoints write commands into git, and guides the operator to the next step.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
from datetime import datetime, timezone
from typing import Any, Callable

from aitri import __version__
from aitri.checkpoint import (
    RESUME_DECISION_ASK,
    checkpoint_summary_lines,
    list_checkpoint_tags,
    run_auto_checkpoint,
    sanitize_tag_part,
)
from aitri.config import CONFIG_FILE, ConfigError, ProjectContext, build_project_context
from aitri.features import (
    FeatureState,
    build_feature,
    load_queue,
    normalize_feature_name,
    scan_all,
    select_next,
    summarize,
)
from aitri.flow import (
    EXIT_ABORTED,
    EXIT_ERROR,
    EXIT_OK,
    RunOptions,
    Session,
    confirm_yes_no,
    feature_from_tokens,
    maybe_advance,
    terminal_session,
)
from aitri.status import STEP_DELIVERY_COMPLETE, get_status_report


BUILTIN_COMMANDS = {"help", "init", "status", "features", "next", "resume", "approve", "go", "checkpoint"}
WRITE_COMMANDS = {"init", "approve", "go"}
DRAFT_MARKER = "STATUS: DRAFT"
APPROVED_MARKER = "STATUS: APPROVED"

Handler = Callable[[ProjectContext, argparse.Namespace, Session, RunOptions], int]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def emit_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def notice_stream(options: RunOptions):
    return sys.stderr if options.format == "json" else sys.stdout


def confirm_proceed(session: Session, options: RunOptions) -> bool | None:
    if options.yes:
        return True
    if options.non_interactive or options.format == "json":
        return None
    return confirm_yes_no(session, "Proceed with this plan? (y/N): ", default_yes=False)


def resolve_feature_arg(ctx: ProjectContext, raw: str | None, wanted: set[FeatureState]) -> tuple[str | None, str | None]:
    """Return (feature, error). Falls back to the next selected feature in one of `wanted` states."""
    if raw:
        feature = normalize_feature_name(raw)
        if not feature:
            return None, "Invalid feature name. Use kebab-case (example: user-login)."
        return feature, None
    candidate = select_next(scan_all(ctx.paths), load_queue(ctx.paths))
    if candidate is not None and candidate.state in wanted:
        return candidate.name, None
    return None, "Feature name is required. Use --feature <name>."


def print_plan(lines: list[str], options: RunOptions) -> None:
    stream = notice_stream(options)
    print("PLAN:", file=stream)
    for line in lines:
        print(f"- {line}", file=stream)


def refuse_unconfirmed(proceed: bool | None, options: RunOptions) -> int | None:
    stream = notice_stream(options)
    if proceed is None:
        print("Non-interactive mode requires --yes to proceed.", file=stream)
        return EXIT_ERROR
    if not proceed:
        print("Aborted.", file=stream)
        return EXIT_ABORTED
    return None


def init_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    paths = ctx.paths
    wanted = [paths.specs_drafts_dir, paths.specs_approved_dir, paths.backlog_root, paths.tests_root, paths.docs_root]
    missing = [d for d in wanted if not d.is_dir()]
    if not missing:
        if options.format == "json":
            emit_json({"ok": True, "created": [], "project_dir": str(ctx.root)})
        else:
            print("structure: ok (nothing to create)")
        return EXIT_OK

    print_plan([f"Create: {paths.rel(d)}" for d in missing], options)
    refused = refuse_unconfirmed(confirm_proceed(session, options), options)
    if refused is not None:
        return refused

    for directory in missing:
        directory.mkdir(parents=True, exist_ok=True)
        keep = directory / ".gitkeep"
        if not any(directory.iterdir()):
            keep.write_text("", encoding="utf-8")

    created = [paths.rel(d) for d in missing]
    if options.format == "json":
        emit_json({"ok": True, "created": created, "project_dir": str(ctx.root)})
    else:
        print(f"Project initialized: {ctx.root}")
        print(f"created_dirs: {len(created)}")
    return EXIT_OK


def status_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    feature = None
    if args.feature:
        feature = normalize_feature_name(args.feature)
        if not feature:
            print("Invalid feature name. Use kebab-case (example: user-login).", file=sys.stderr)
            return EXIT_ERROR
    report = get_status_report(ctx, feature)
    if options.format == "json":
        emit_json(report)
        return EXIT_OK

    structure = report["structure"]
    if structure["ok"]:
        print("structure: ok")
    else:
        print(f"structure: missing {', '.join(structure['missing_dirs'])}")
    selected = report["feature"]
    if selected:
        print(f"feature: {selected['name']} ({selected['state']})")
    else:
        print("feature: none")
    summary = report["features_summary"]
    print(
        "features: "
        f"total={summary['total']} delivered={summary['delivered']} "
        f"in_progress={summary['in_progress']} draft={summary['draft']}"
    )
    print(f"next_step: {report['next_step']}")
    print(f"recommended_command: {report['recommended_command'] or '(none)'}")
    print(f"why: {report['next_step_message']}")
    confidence = report["confidence"]
    print(f"confidence: {confidence['score']} ({confidence['level']})")

    state = report["checkpoint"]["state"]
    if not state["git"]:
        print("checkpoint: not a git repository")
    elif state["detected"]:
        commit = state["latest_commit"]
        print(f"checkpoint: detected {commit['hash']} {commit['message']}")
        print("- Resume decision required: ask user to continue from checkpoint (yes/no).")
    else:
        print(f"checkpoint: none detected (retained tags: {state['managed_count']})")
    return EXIT_OK


def features_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    features = scan_all(ctx.paths)
    summary = summarize(features)
    if options.format == "json":
        emit_json({"ok": True, "features": [f.to_dict() for f in features], "summary": summary})
        return EXIT_OK

    if not features:
        print("No features found. Run `aitri draft` to start a new feature.")
        return EXIT_OK

    name_w = max(20, *(len(f.name) + 2 for f in features))
    state_w = 18
    print("Features in this project:\n")
    print("  " + "Feature".ljust(name_w) + "State".ljust(state_w) + "Next Step")
    print("  " + "-" * (name_w + state_w + 40))
    for f in features:
        print("  " + f.name.ljust(name_w) + f.state.value.ljust(state_w) + (f.next_command or "(complete)"))
    print("")
    parts = []
    if summary["delivered"]:
        parts.append(f"{summary['delivered']} delivered")
    if summary["in_progress"]:
        parts.append(f"{summary['in_progress']} in progress")
    if summary["draft"]:
        parts.append(f"{summary['draft']} draft")
    plural = "s" if summary["total"] != 1 else ""
    print(f"Total: {summary['total']} feature{plural} ({', '.join(parts)})")
    return EXIT_OK


def next_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    features = scan_all(ctx.paths)
    candidate = select_next(features, load_queue(ctx.paths))
    if candidate is None:
        if options.format == "json":
            emit_json({"ok": True, "feature": None, "command": None, "all_delivered": bool(features)})
        else:
            print("All features are delivered. Run `aitri draft` to start a new feature.")
        return EXIT_OK

    command = candidate.next_command or f"aitri status --feature {candidate.name}"
    if options.format == "json":
        emit_json({"ok": True, "feature": candidate.to_dict(), "command": command, "all_delivered": False})
    elif options.non_interactive:
        print(f"Next: {candidate.name} ({candidate.state.value})")
        print(f"Run: {command}")
    else:
        print(f"Next feature: {candidate.name} ({candidate.state.value})")
        print(f"Suggested: {command}")
    return EXIT_OK


def resume_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    report = get_status_report(ctx, normalize_feature_name(args.feature) or None)
    state = report["checkpoint"]["state"]
    needs_decision = state["resume_decision"] == RESUME_DECISION_ASK
    payload = {
        "ok": True,
        "checkpoint_detected": state["detected"],
        "resume_decision": state["resume_decision"],
        "next_step": report["next_step"],
        "recommended_command": report["recommended_command"],
        "message": (
            "Checkpoint detected. Explicit user confirmation is required to continue."
            if needs_decision
            else "No checkpoint decision required. Continue with recommended command."
        ),
    }
    if options.format == "json":
        emit_json(payload)
        return EXIT_OK

    if needs_decision:
        commit = state["latest_commit"]
        print(f"Checkpoint: {commit['hash']} {commit['message']}")
        if options.yes:
            proceed: bool | None = True
        elif options.non_interactive:
            proceed = None
        else:
            proceed = confirm_yes_no(session, "Checkpoint found. Continue from checkpoint? (y/N): ", default_yes=False)
        if proceed is None:
            print("Non-interactive mode requires --yes to confirm resume from checkpoint.")
            return EXIT_ERROR
        if not proceed:
            print("Resume decision: STOP.")
            return EXIT_ABORTED

    print("Resume decision: CONTINUE.")
    print(f"Current state: {report['next_step']}")
    if report["next_step"] == STEP_DELIVERY_COMPLETE:
        print("Workflow complete. No further SDLC execution steps are required.")
        return EXIT_OK
    print(f"Recommended next command: {report['recommended_command']}")
    return EXIT_OK


def approve_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    feature, err = resolve_feature_arg(ctx, args.feature, {FeatureState.DRAFT})
    if err:
        print(err, file=sys.stderr)
        return EXIT_ERROR
    args.feature = feature
    paths = ctx.paths
    draft = paths.draft_spec_file(feature)
    approved = paths.approved_spec_file(feature)
    if not draft.exists():
        print(f"Draft spec not found: {paths.rel(draft)}", file=sys.stderr)
        return EXIT_ERROR

    content = draft.read_text(encoding="utf-8")
    marker_lines = [line.strip() for line in content.splitlines()]
    if DRAFT_MARKER not in marker_lines:
        print("GATE FAILED:", file=sys.stderr)
        print(f"- Spec must contain `{DRAFT_MARKER}`.", file=sys.stderr)
        return EXIT_ERROR

    print_plan([f"Move: {paths.rel(draft)} -> {paths.rel(approved)}"], options)
    refused = refuse_unconfirmed(confirm_proceed(session, options), options)
    if refused is not None:
        return refused

    updated = "\n".join(
        APPROVED_MARKER if line.strip() == DRAFT_MARKER else line for line in content.split("\n")
    )
    approved.parent.mkdir(parents=True, exist_ok=True)
    approved.write_text(updated, encoding="utf-8")
    draft.unlink()

    if options.format == "json":
        emit_json({"ok": True, "feature": feature, "approved_spec": paths.rel(approved)})
    else:
        print(f"Spec approved: {paths.rel(approved)}")
    return EXIT_OK


def go_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    allowed = {FeatureState.APPROVED, FeatureState.BLOCKED, FeatureState.IMPLEMENTATION}
    feature, err = resolve_feature_arg(ctx, args.feature, allowed)
    if err:
        print(err, file=sys.stderr)
        return EXIT_ERROR
    args.feature = feature
    paths = ctx.paths
    current = build_feature(feature, paths)
    if current.state not in allowed:
        print(f"GO BLOCKED: feature `{feature}` is in state `{current.state.value}`.", file=sys.stderr)
        if current.next_command:
            print(f"Run next command: {current.next_command}", file=sys.stderr)
        return EXIT_ERROR
    plan = paths.plan_file(feature)
    if current.state is FeatureState.APPROVED and not plan.exists():
        print(f"GO BLOCKED: planning artifacts are missing ({paths.rel(plan)}).", file=sys.stderr)
        print(f"Run next command: aitri plan --feature {feature}", file=sys.stderr)
        return EXIT_ERROR

    marker = paths.go_marker_file(feature)
    print_plan([f"Read: {current.spec_file}", f"Write: {paths.rel(marker)}"], options)
    refused = refuse_unconfirmed(confirm_proceed(session, options), options)
    if refused is not None:
        return refused

    marker.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "schema_version": 1,
        "ok": True,
        "feature": feature,
        "decided_at": utc_now(),
        "spec": current.spec_file,
    }
    marker.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    if options.format == "json":
        emit_json({"ok": True, "feature": feature, "go_marker": paths.rel(marker), "state": current.state.value})
        return EXIT_OK
    print("Implementation go/no-go decision: GO.")
    print(f"- {paths.rel(marker)}")
    if current.state is FeatureState.BLOCKED:
        print(
            f"Delivery record still holds decision HOLD ({paths.rel(paths.delivery_json_file(feature))}). "
            f"Re-run `aitri deliver --feature {feature}` once the blockers are resolved."
        )
    return EXIT_OK


def checkpoint_project(ctx: ProjectContext, args: argparse.Namespace, session: Session, options: RunOptions) -> int:
    if args.list:
        tags, err = list_checkpoint_tags(ctx)
        if err is not None:
            print(f"checkpoint list failed: {err}", file=sys.stderr)
            return EXIT_ERROR
        if options.format == "json":
            emit_json({"ok": True, "tags": tags, "max_retained": ctx.config.checkpoint_max})
        else:
            print(f"checkpoints: {len(tags)} (retention: last {ctx.config.checkpoint_max})")
            for tag in tags:
                print(f"- {tag}")
        return EXIT_OK

    label = (args.label or "").strip() or None
    if label is not None and not sanitize_tag_part(label):
        print(f"Invalid checkpoint label: {args.label!r}", file=sys.stderr)
        return EXIT_ERROR
    result = run_auto_checkpoint(
        ctx,
        phase=args.phase,
        feature=label,
        enabled=True,
        max_retained=ctx.config.checkpoint_max,
    )
    if options.format == "json":
        emit_json(result)
    else:
        lines = checkpoint_summary_lines(result) or ["Checkpoint skipped: no changes in managed paths."]
        for line in lines:
            print(line)
    if result["performed"] or result["reason"] == "no_changes":
        return EXIT_OK
    return EXIT_ERROR


def run_post_steps(
    ctx: ProjectContext,
    session: Session,
    options: RunOptions,
    command: str,
    code: int,
    feature: str | None,
    mutating: bool,
) -> int:
    if mutating and code == EXIT_OK:
        result = run_auto_checkpoint(
            ctx,
            phase=command,
            feature=feature,
            enabled=options.checkpoint and ctx.config.checkpoint_enabled,
            max_retained=ctx.config.checkpoint_max,
        )
        stream = notice_stream(options)
        for line in checkpoint_summary_lines(result):
            print(line, file=stream)
    return maybe_advance(ctx, session, code, command, options, feature)


def add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--project-dir", default=".", help="Project root (default: current directory).")
    p.add_argument("--format", choices=["text", "json"], default="text", help="Output format (default: text).")
    p.add_argument("--non-interactive", action="store_true", help="Never prompt; fail where confirmation is needed.")
    p.add_argument("--yes", "-y", action="store_true", help="Answer yes to confirmations.")
    p.add_argument(
        "--no-checkpoint",
        action="store_false",
        dest="checkpoint",
        help="Skip the automatic git checkpoint after write commands.",
    )
    p.add_argument(
        "--no-auto-advance",
        action="store_false",
        dest="auto_advance",
        help="Do not offer to run the recommended next command.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aitri",
        description="Spec-driven workflow CLI.",
        epilog=(
            "Other commands (draft, discover, plan, build, deliver, ...) are external generators "
            f'configured under "commands" in {CONFIG_FILE}.'
        ),
    )
    parser.add_argument("--version", action="version", version=f"aitri v{__version__}")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_help = sub.add_parser("help", help="Show this help.")
    add_common_args(p_help)
    p_help.set_defaults(func=None)

    p_init = sub.add_parser("init", help="Create the project structure (specs, backlog, tests, docs).")
    add_common_args(p_init)
    p_init.set_defaults(func=init_project)

    p_status = sub.add_parser("status", help="Report project state and the recommended next step.")
    p_status.add_argument("--feature")
    add_common_args(p_status)
    p_status.set_defaults(func=status_project)

    p_features = sub.add_parser("features", help="List features with lifecycle state.")
    add_common_args(p_features)
    p_features.set_defaults(func=features_project)

    p_next = sub.add_parser("next", help="Show the next feature to work on.")
    add_common_args(p_next)
    p_next.set_defaults(func=next_project)

    p_resume = sub.add_parser("resume", help="Resume from the latest checkpoint.")
    p_resume.add_argument("--feature")
    add_common_args(p_resume)
    p_resume.set_defaults(func=resume_project)

    p_approve = sub.add_parser("approve", help="Approve a draft spec.")
    p_approve.add_argument("--feature")
    add_common_args(p_approve)
    p_approve.set_defaults(func=approve_project)

    p_go = sub.add_parser("go", help="Record the go decision for implementation.")
    p_go.add_argument("--feature")
    add_common_args(p_go)
    p_go.set_defaults(func=go_project)

    p_checkpoint = sub.add_parser("checkpoint", help="Create a checkpoint now, or list retained checkpoints.")
    p_checkpoint.add_argument("--list", action="store_true", help="List checkpoint tags, newest first.")
    p_checkpoint.add_argument("--label", help="Checkpoint label (default: project).")
    p_checkpoint.add_argument("--phase", default="manual", help="Checkpoint phase (default: manual).")
    add_common_args(p_checkpoint)
    p_checkpoint.set_defaults(func=checkpoint_project)

    return parser


def run_options(args: argparse.Namespace, ctx: ProjectContext) -> RunOptions:
    return RunOptions(
        format=args.format,
        non_interactive=args.non_interactive,
        yes=args.yes,
        auto_advance=args.auto_advance and ctx.config.auto_advance,
        checkpoint=args.checkpoint,
    )


def run_external_command(argv: list[str]) -> int:
    name = argv[0]
    ext = argparse.ArgumentParser(prog=f"aitri {name}", add_help=False, allow_abbrev=False)
    add_common_args(ext)
    args, rest = ext.parse_known_args(argv[1:])
    try:
        ctx = build_project_context(args.project_dir)
    except ConfigError as exc:
        print(f"config_error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    configured = ctx.config.commands.get(name)
    if not configured:
        print(f"unknown command: {name}", file=sys.stderr)
        print(f'Configure "commands.{name}" in {CONFIG_FILE} to plug in an external generator.', file=sys.stderr)
        return EXIT_ERROR

    forwarded = list(rest)
    if args.format != "text":
        forwarded += ["--format", args.format]
    if args.non_interactive:
        forwarded.append("--non-interactive")
    if args.yes:
        forwarded.append("--yes")

    try:
        proc = subprocess.run([*configured, *forwarded], cwd=str(ctx.root), env=dict(ctx.env), check=False)
    except OSError as exc:
        print(f"external command `{name}` failed to start: {exc}", file=sys.stderr)
        return EXIT_ERROR
    code = proc.returncode if proc.returncode >= 0 else EXIT_ERROR

    feature = normalize_feature_name(feature_from_tokens(rest)) or None
    options = run_options(args, ctx)
    return run_post_steps(ctx, terminal_session(), options, name, code, feature, mutating=True)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv and not argv[0].startswith("-") and argv[0] not in BUILTIN_COMMANDS:
        return run_external_command(argv)

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd == "help":
        parser.print_help()
        return EXIT_OK

    try:
        ctx = build_project_context(args.project_dir)
    except ConfigError as exc:
        print(f"config_error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    options = run_options(args, ctx)
    session = terminal_session()
    handler: Handler = args.func
    code = handler(ctx, args, session, options)
    feature = normalize_feature_name(getattr(args, "feature", None)) or None
    return run_post_steps(ctx, session, options, args.cmd, code, feature, mutating=args.cmd in WRITE_COMMANDS)


if __name__ == "__main__":
    raise SystemExit(main())
