"""Command-line interface for relay."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import cast

from relay.agent.loop import OrchestrationLoop
from relay.agent.models import LoopOutcome, PendingApproval
from relay.config import AppConfig
from relay.dispatch import AuditSink, CommandDispatcher
from relay.errors import BackendUnreachable
from relay.llm.client import LLMClient, OllamaClient, ReasoningBackend
from relay.safety.classifier import SafetyClassifier
from relay.skills import Platform, SkillRegistry, default_registry

LOGGER = logging.getLogger(__name__)

_QUIT_WORDS = {"q", "quit", "exit"}


class CLIArgs(argparse.Namespace):
    message: str | None
    working_directory: str | None
    platform: str | None
    list_skills: bool
    show_audit: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", description="Relay IT assistant")
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Working directory for commands run on your behalf. "
            "Takes precedence over config/env values."
        ),
    )
    parser.add_argument(
        "--platform",
        help="Override the detected platform (linux, darwin or windows).",
    )
    parser.add_argument(
        "--list-skills",
        action="store_true",
        help="Print the capability manifest for the selected platform and exit.",
    )
    parser.add_argument(
        "--show-audit",
        action="store_true",
        help="Print the audit trail of every dispatched action when the session ends.",
    )
    parser.add_argument("message", nargs="?", help="Describe the problem you need help with")
    return parser


def create_backend(config: AppConfig) -> ReasoningBackend:
    if config.provider == "ollama":
        return OllamaClient(
            host=config.ollama_host,
            model=config.ollama_model,
            timeout=config.backend_timeout,
        )
    return LLMClient(
        api_key=config.api_key,
        model=config.model,
        api_url=config.api_url,
        timeout=config.backend_timeout,
        reasoning_effort=config.reasoning_effort,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    platform = config.platform
    if args.platform is not None:
        try:
            platform = Platform.parse(args.platform)
        except ValueError as exc:
            print(str(exc))
            return 1

    registry = default_registry()
    if args.list_skills:
        print(_render_skill_list(registry, platform))
        return 0

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    message = args.message or _read_message("You: ")
    if not message:
        print("No message provided.")
        return 1

    audit = AuditSink(config.audit_capacity)
    dispatcher = CommandDispatcher(
        registry,
        audit,
        platform=platform,
        query_timeout=config.query_timeout,
        action_timeout=config.action_timeout,
        output_cap_bytes=config.output_cap_bytes,
        working_directory=working_directory,
    )
    loop = OrchestrationLoop(
        backend=create_backend(config),
        registry=registry,
        classifier=SafetyClassifier(registry),
        dispatcher=dispatcher,
        platform=platform,
        log_dir=config.log_dir,
        max_steps=config.max_steps,
        result_char_limit=config.result_char_limit,
    )
    LOGGER.debug("platform_selected", extra={"platform": platform.value})

    exit_code = 0
    try:
        while True:
            outcome = loop.start(message)
            print(_render_outcome(outcome))
            while outcome.pending is not None:
                if _confirm_action(outcome.pending):
                    outcome = loop.approve()
                else:
                    outcome = loop.decline()
                print(_render_outcome(outcome))

            message = _read_message("You: ")
            if not message or message.lower() in _QUIT_WORDS:
                break
    except BackendUnreachable as exc:
        print(f"Relay could not reach its reasoning backend: {exc}")
        exit_code = 2
    finally:
        loop.end_session()
        if args.show_audit or config.show_audit:
            print(_render_audit(audit))
    return exit_code


def _read_message(prompt: str) -> str:
    try:
        return input(prompt).strip()
    except EOFError:
        return ""


def _confirm_action(pending: PendingApproval) -> bool:
    request = pending.request
    print("\n=== ACTION NEEDS YOUR APPROVAL ===")
    print(f"Action: {request.skill_id}")
    for key, value in request.bound_parameters.items():
        print(f"  {key}: {value}")
    print(f"Why: {pending.verdict.reason}")
    print("==================================")
    try:
        choice = input("Allow this action? [y/N]: ").strip().lower()
    except EOFError:
        return False
    return choice in {"y", "yes"}


def _render_outcome(outcome: LoopOutcome) -> str:
    lines: list[str] = []
    for message in outcome.messages:
        text = message.strip()
        if text:
            lines.append(f"Relay: {text}")
    for step in outcome.steps:
        status = "ok" if step.result.success else f"failed ({step.result.error_kind.value})"
        line = f"[step {step.step_index}] {step.action_type}: {status}"
        if step.result.error:
            line = f"{line} - {step.result.error}"
        lines.append(line)
    return "\n".join(lines)


def _render_audit(audit: AuditSink) -> str:
    records = audit.records()
    if not records:
        return "Audit trail: no actions were dispatched."
    lines = [f"Audit trail ({len(records)} records):"]
    for record in records:
        status = "ok" if record.success else "failed"
        line = f"{record.timestamp} {record.action_type} {status}: {record.command_text}"
        if record.error_message:
            line = f"{line} ({record.error_message})"
        lines.append(line)
    return "\n".join(lines)


def _render_skill_list(registry: SkillRegistry, platform: Platform) -> str:
    available = SkillRegistry(registry.available_on(platform))
    return "\n".join(
        [
            f"Skills available on {platform.value} ({len(available)} of {len(registry)}):",
            "",
            available.render_manifest(),
        ]
    )


if __name__ == "__main__":
    raise SystemExit(main())
