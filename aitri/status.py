"""
Status report: where the project is and what to run next.

The recommendation is recomputed from the filesystem on every call and never
persisted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from aitri.checkpoint import detect_checkpoint_state
from aitri.config import ProjectContext
from aitri.features import (
    Feature,
    FeatureState,
    build_feature,
    feature_next_command,
    load_queue,
    read_delivery_record,
    scan_all,
    select_next,
    summarize,
)


STEP_INIT = "init"
STEP_DRAFT = "draft"
STEP_APPROVE = "approve"
STEP_PLAN = "plan"
STEP_READY_FOR_GO = "ready_for_human_approval"
STEP_WRITE_CODE = "write_implementation_code"
STEP_DELIVER = "deliver"
STEP_UNBLOCK = "unblock"
STEP_DELIVERY_COMPLETE = "delivery_complete"
STEP_INSPECT = "inspect"

STEP_MESSAGES = {
    STEP_INIT: "Project structure is missing. Initialize it before anything else.",
    STEP_DRAFT: "No features yet. Create a draft spec to start the SDLC flow.",
    STEP_APPROVE: "A draft spec is waiting for review. Approve it to continue the SDLC flow.",
    STEP_PLAN: "The spec is approved. Continue SDLC flow by generating the plan.",
    STEP_READY_FOR_GO: "Planning artifacts are complete. Human go/no-go decision is required before implementation.",
    STEP_WRITE_CODE: "Implementation is authorized. Code must be written before delivery.",
    STEP_DELIVER: "Implementation is recorded. Run the delivery gate to reach a decision.",
    STEP_UNBLOCK: "Delivery is on HOLD. Resolve the blockers and re-authorize implementation.",
    STEP_DELIVERY_COMPLETE: "All features are delivered. The workflow is complete.",
    STEP_INSPECT: "Feature has no artifacts yet. Inspect its status.",
}

LIFECYCLE_ARTIFACTS = ("spec", "discovery", "plan", "backlog", "tests", "verification")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def missing_structure(ctx: ProjectContext) -> list[str]:
    return [rel for rel in ctx.paths.managed_paths() if not (ctx.root / rel).is_dir()]


def collect_artifacts(ctx: ProjectContext, feature: str) -> dict[str, bool]:
    paths = ctx.paths
    return {
        "spec": paths.approved_spec_file(feature).exists() or paths.draft_spec_file(feature).exists(),
        "discovery": paths.discovery_file(feature).exists(),
        "plan": paths.plan_file(feature).exists(),
        "backlog": paths.backlog_file(feature).exists(),
        "tests": paths.tests_file(feature).exists(),
        "verification": paths.verification_file(feature).exists(),
        "go_marker": paths.go_marker_file(feature).exists(),
        "delivery": paths.delivery_json_file(feature).exists(),
    }


def compute_confidence(artifacts: dict[str, bool] | None) -> dict[str, Any]:
    if not artifacts:
        return {"score": 0, "level": "low"}
    present = sum(1 for key in LIFECYCLE_ARTIFACTS if artifacts.get(key))
    score = round(100 * present / len(LIFECYCLE_ARTIFACTS))
    if score >= 80:
        level = "high"
    elif score >= 50:
        level = "medium"
    else:
        level = "low"
    return {"score": score, "level": level}


def select_feature(
    ctx: ProjectContext, features: list[Feature], requested: str | None
) -> tuple[Feature | None, str | None]:
    if requested:
        for feature in features:
            if feature.name == requested:
                return feature, "argument"
        return build_feature(requested, ctx.paths), "argument"

    queue = load_queue(ctx.paths)
    selected = select_next(features, queue)
    if selected is not None:
        queued = {e["feature"] for e in queue}
        return selected, "queue" if selected.name in queued else "registry"
    delivered = [f for f in features if f.state is FeatureState.DELIVERED]
    if delivered:
        return delivered[-1], "registry"
    return None, None


def recommend(ctx: ProjectContext, feature: Feature | None, missing: list[str]) -> tuple[str, str | None]:
    """Return (next_step, recommended_command)."""
    if missing:
        return STEP_INIT, "aitri init"
    if feature is None:
        return STEP_DRAFT, "aitri draft"

    state = feature.state
    name = feature.name
    if state is FeatureState.DRAFT:
        return STEP_APPROVE, feature_next_command(state, name)
    if state is FeatureState.APPROVED:
        if ctx.paths.plan_file(name).exists():
            return STEP_READY_FOR_GO, f"aitri go --feature {name}"
        return STEP_PLAN, feature_next_command(state, name)
    if state is FeatureState.IMPLEMENTATION:
        return STEP_WRITE_CODE, feature_next_command(state, name)
    if state is FeatureState.DELIVER_PENDING:
        return STEP_DELIVER, feature_next_command(state, name)
    if state is FeatureState.BLOCKED:
        return STEP_UNBLOCK, feature_next_command(state, name)
    if state is FeatureState.DELIVERED:
        return STEP_DELIVERY_COMPLETE, None
    return STEP_INSPECT, feature_next_command(state, name)


def get_status_report(ctx: ProjectContext, feature: str | None = None) -> dict[str, Any]:
    features = scan_all(ctx.paths)
    missing = missing_structure(ctx)
    selected, source = select_feature(ctx, features, feature)
    next_step, recommended = recommend(ctx, selected, missing)
    artifacts = collect_artifacts(ctx, selected.name) if selected else None

    delivery = None
    if selected is not None and selected.state is FeatureState.DELIVERED:
        record = read_delivery_record(ctx.paths, selected.name) or {}
        delivery = {
            "report": ctx.paths.rel(ctx.paths.delivery_json_file(selected.name)),
            "decision": record.get("decision"),
            "delivered_at": selected.delivered_at,
            "release_tag": record.get("releaseTag", record.get("release_tag")),
        }

    return {
        "version": "v0",
        "run_at": utc_now(),
        "project_dir": str(ctx.root),
        "config_loaded": ctx.config.loaded,
        "structure": {"ok": not missing, "missing_dirs": missing},
        "selection": {"feature": selected.name if selected else None, "source": source},
        "feature": selected.to_dict() if selected else None,
        "artifacts": artifacts,
        "delivery": delivery,
        "features_summary": summarize(features),
        "next_step": next_step,
        "next_step_message": STEP_MESSAGES[next_step],
        "recommended_command": recommended,
        "confidence": compute_confidence(artifacts),
        "checkpoint": {
            "command": 'git add -A && git commit -m "checkpoint: <feature-or-stage>"',
            "state": detect_checkpoint_state(ctx, ctx.config.checkpoint_max),
        },
    }
