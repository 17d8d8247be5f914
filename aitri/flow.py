"""
Auto-advance: after a command finishes, recompute the recommended next step
and, when the session allows it, offer to run it.

Advancement is an explicit bounded loop. Each iteration asks the status report
for a recommendation, and stops when:

- the recommendation repeats the command that just ran,
- it cannot be run (manual work, placeholders, terminal state),
- the operator declines,
- a child fails,
- or MAX_ADVANCE_STEPS is reached.
"""

from __future__ import annotations

import json
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from aitri.config import ConfigError, ProjectContext
from aitri.status import STEP_DELIVERY_COMPLETE, STEP_WRITE_CODE, get_status_report


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 3
MAX_ADVANCE_STEPS = 8
PROGRAM_NAME = "aitri"
PLACEHOLDER_RE = re.compile(r"<[^>]+>")

StatusFn = Callable[..., "dict[str, Any]"]


def _default_ask(question: str) -> str:
    return input(question)


def _default_spawn(argv: list[str], cwd: Path, env: dict[str, str]) -> int:
    # stdin/stdout/stderr are inherited so the child owns the terminal.
    proc = subprocess.Popen(argv, cwd=str(cwd), env=env)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        # Ctrl+C reaches the whole process group; report how the child ended.
        return proc.wait()


@dataclass
class Session:
    stdin_isatty: bool = False
    stdout_isatty: bool = False
    ask: Callable[[str], str] = _default_ask
    spawn: Callable[[list[str], Path, dict[str, str]], int] = _default_spawn
    python: str = field(default_factory=lambda: sys.executable)

    @property
    def interactive(self) -> bool:
        return self.stdin_isatty and self.stdout_isatty


def terminal_session() -> Session:
    return Session(
        stdin_isatty=sys.stdin is not None and sys.stdin.isatty(),
        stdout_isatty=sys.stdout is not None and sys.stdout.isatty(),
    )


@dataclass(frozen=True)
class RunOptions:
    format: str = "text"
    non_interactive: bool = False
    yes: bool = False
    auto_advance: bool = True
    checkpoint: bool = True


def confirm_yes_no(session: Session, question: str, default_yes: bool = True) -> bool:
    while True:
        try:
            answer = session.ask(question).strip().lower()
        except EOFError:
            return False
        if not answer:
            return default_yes
        if answer in {"y", "yes"}:
            return True
        if answer in {"n", "no"}:
            return False
        print("Invalid input. Please type 'y' or 'n'.")


def should_offer_auto_advance(code: int, command: str, options: RunOptions, session: Session) -> bool:
    if code != EXIT_OK:
        return False
    if not options.auto_advance:
        return False
    if options.non_interactive or options.yes:
        return False
    if options.format != "text":
        return False
    if not session.interactive:
        return False
    if command == "help":
        return False
    return True


def parse_recommended_command_tokens(recommended: str | None) -> list[str] | None:
    raw = str(recommended or "").strip()
    if not raw or PLACEHOLDER_RE.search(raw):
        return None
    tokens = raw.split()
    if tokens and tokens[0] == PROGRAM_NAME:
        tokens = tokens[1:]
    return tokens or None


def feature_from_tokens(tokens: list[str]) -> str | None:
    for idx, token in enumerate(tokens):
        if token == "--feature" and idx + 1 < len(tokens):
            return tokens[idx + 1]
        if token.startswith("--feature="):
            return token.split("=", 1)[1]
    return None


def cli_argv(session: Session, ctx: ProjectContext, tokens: list[str]) -> list[str]:
    return [
        session.python,
        "-m",
        "aitri.cli",
        *tokens,
        "--project-dir",
        str(ctx.root),
        "--no-auto-advance",
    ]


def print_implementation_guidance(feature: str | None) -> None:
    name = feature or "<feature>"
    print("\nIMPLEMENTATION REQUIRED:")
    print("- Implementation is authorized. Now you (or your AI agent) must write the actual code.")
    print(f"- Source of truth: the approved spec, plan, backlog and tests for `{name}`.")
    print("- Implement each user story until its acceptance criteria hold.")
    print(f"- Record verification evidence, then run: aitri deliver --feature {name}")


def maybe_advance(
    ctx: ProjectContext,
    session: Session,
    code: int,
    command: str,
    options: RunOptions,
    feature: str | None = None,
    status_fn: StatusFn | None = None,
) -> int:
    if not should_offer_auto_advance(code, command, options, session):
        return code

    fetch_status = status_fn or get_status_report
    current_code = code
    current_command = command
    current_feature = feature

    for _ in range(MAX_ADVANCE_STEPS):
        try:
            report = fetch_status(ctx, current_feature)
        except (OSError, ValueError, ConfigError) as exc:
            print(f"Auto-advance skipped: status unavailable ({exc})")
            return current_code

        next_step = report.get("next_step")
        recommended = report.get("recommended_command")
        print("\nAitri guide:")
        print(f"- Current state: {next_step or 'unknown'}")
        print(f"- Recommended next step: {recommended or '(none)'}")
        if report.get("next_step_message"):
            print(f"- Why: {report['next_step_message']}")

        if next_step == STEP_DELIVERY_COMPLETE:
            return run_completion_guide(ctx, session, report, current_code)

        if not recommended:
            return current_code

        tokens = parse_recommended_command_tokens(recommended)
        if tokens is None or tokens[0] == current_command:
            print(f"- Continue manually with: {recommended}")
            return current_code

        if next_step == STEP_WRITE_CODE:
            print_implementation_guidance((report.get("selection") or {}).get("feature") or current_feature)
            return current_code

        if not confirm_yes_no(session, "Run this next step now? (Y/n): ", default_yes=True):
            print(f"Stopped. Continue later with: {recommended}")
            return current_code

        printable = f"{PROGRAM_NAME} {' '.join(tokens)}"
        print(f"Running next step: {printable}")
        try:
            child_code = session.spawn(cli_argv(session, ctx, tokens), ctx.root, dict(ctx.env))
        except OSError as exc:
            print(f"Auto-advance failed: {exc}")
            return EXIT_ERROR
        if child_code < 0:
            print(f"Auto-advance failed: child terminated by signal {-child_code}")
            return EXIT_ERROR

        current_code = child_code
        if current_code != EXIT_OK:
            return current_code
        current_command = tokens[0]
        current_feature = feature_from_tokens(tokens) or current_feature

    print(f"Auto-advance limit reached ({MAX_ADVANCE_STEPS} steps). Continue manually.")
    return current_code


def _is_web_script(text: str) -> bool:
    return bool(
        re.search(
            r"\b(vite|next|react-scripts|webpack|astro|nuxt|svelte|parcel|storybook|serve|http-server|frontend|web)\b",
            text,
            re.IGNORECASE,
        )
    )


def detect_preview_command(root: Path) -> dict[str, Any] | None:
    package_json = root / "package.json"
    if package_json.exists():
        try:
            pkg = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            pkg = {}
        scripts = pkg.get("scripts") if isinstance(pkg, dict) else None
        if isinstance(scripts, dict):
            preview = scripts.get("preview")
            if isinstance(preview, str) and preview.strip():
                return {"reason": "package.json script `preview`", "command": ["npm", "run", "preview"]}
            for key in ("dev", "start"):
                value = scripts.get(key)
                if isinstance(value, str) and value.strip() and _is_web_script(value):
                    return {"reason": f"package.json script `{key}` (web-like)", "command": ["npm", "run", key]}

    for entry in ("app.py", "main.py", "manage.py"):
        if (root / entry).exists():
            command = ["python", entry, "runserver"] if entry == "manage.py" else ["python", entry]
            return {"reason": entry, "command": command}

    makefile = root / "Makefile"
    if makefile.exists():
        content = makefile.read_text(encoding="utf-8", errors="replace")
        for target in ("dev", "run", "start", "serve"):
            if re.search(rf"^{target}\s*:", content, re.MULTILINE):
                return {"reason": f"Makefile ({target})", "command": ["make", target]}
    return None


def run_completion_guide(
    ctx: ProjectContext,
    session: Session,
    report: dict[str, Any],
    base_code: int,
) -> int:
    print("- Workflow complete: delivery gate already reached SHIP.")
    delivery = report.get("delivery") or {}
    if delivery.get("report"):
        print(f"- Delivery report: {delivery['report']}")
    if delivery.get("decision"):
        print(f"- Decision: {delivery['decision']}")
    if delivery.get("delivered_at"):
        print(f"- Delivered at: {delivery['delivered_at']}")
    if delivery.get("release_tag"):
        print(f"- Release tag: {delivery['release_tag']}")

    candidate = detect_preview_command(ctx.root)
    if candidate is None:
        print("- Live product preview: no local preview detected for this project.")
        return base_code

    command_text = " ".join(candidate["command"])
    print(f"- Live product preview available via {candidate['reason']}.")
    if not confirm_yes_no(session, "Would you like to launch a live local preview now? (Y/n): ", default_yes=True):
        print(f"- Run later: {command_text}")
        return base_code

    print(f"Starting preview command: {command_text}")
    print("Stop it with Ctrl+C when you finish reviewing.")
    try:
        preview_code = session.spawn(candidate["command"], ctx.root, dict(ctx.env))
    except OSError as exc:
        print(f"- Preview command failed to start: {exc}")
        return base_code
    if preview_code not in (0, 130, -2):
        print(f"- Preview command exited with code {preview_code}.")
    return base_code
