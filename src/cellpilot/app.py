"""Command-line entry point for running agent turns against a JSON workbook."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.orchestration.runner import AgentRunner, ApprovalRequest
from .ai.pricing import GEMINI_PRICING_UPDATED, estimate_gemini_cost, format_usd
from .documents.workbook import InMemoryWorkbook
from .services.session_log import build_session_log
from .services.settings import Settings, SettingsError, SettingsStore, parse_override, redacted_settings
from .state.models import TurnRecord
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_EXIT_WORDS = {"exit", "quit"}
_INJECTION_WARNING = (
    "Prompt injection warning: only use with trusted spreadsheets. "
    "Sheet content can contain hostile instructions."
)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    config = logging_utils.LogConfig.from_env(logging.DEBUG if debug else None, console=debug)
    logging_utils.setup_logging(config, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(config.level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except SettingsError:
        raise
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings().normalized()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``cellpilot`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("CELLPILOT_DEBUG")
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CELLPILOT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
        settings = load_settings(resolved_path, store=store, overrides=overrides or None)
    except SettingsError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return 0

    workbook_path = Path(args.workbook).expanduser() if args.workbook else None
    workbook = InMemoryWorkbook.load(workbook_path) if workbook_path and workbook_path.exists() else InMemoryWorkbook()
    runner = AgentRunner(
        workbook,
        settings,
        session_log=build_session_log(enabled=settings.logging_enabled),
    )
    gate = _auto_approve if args.yes else _prompt_for_approval
    if settings.warn_on_prompt_injection:
        print(_INJECTION_WARNING, file=sys.stderr)

    prompts = [args.prompt] if args.prompt else None
    try:
        asyncio.run(_run_prompts(runner, prompts, gate, workbook, workbook_path))
    except KeyboardInterrupt:  # pragma: no cover - interactive only
        print(file=sys.stderr)
        return 130
    _print_cost_summary(runner.session.turn_records)
    return 0


async def _run_prompts(
    runner: AgentRunner,
    prompts: Sequence[str] | None,
    gate: Any,
    workbook: InMemoryWorkbook,
    workbook_path: Path | None,
) -> None:
    pending = list(prompts) if prompts is not None else None
    try:
        while True:
            if pending is not None:
                if not pending:
                    return
                prompt = pending.pop(0)
            else:
                prompt = _read_prompt()
                if prompt is None:
                    return
            if not prompt.strip():
                continue
            record = await runner.run_turn(prompt, ask_approval=gate)
            _print_turn(runner, record)
            if record is not None and record.edited_ranges and workbook_path is not None:
                workbook.save(workbook_path)
                _LOGGER.info("Saved workbook to %s", workbook_path)
    finally:
        await runner.aclose()


def _read_prompt(stream: TextIO | None = None) -> str | None:
    source = stream or sys.stdin
    if source.isatty():
        print("cellpilot> ", end="", flush=True)
    line = source.readline()
    if not line or line.strip().lower() in _EXIT_WORDS:
        return None
    return line.rstrip("\n")


def _print_turn(runner: AgentRunner, record: TurnRecord | None, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    for card in runner.session.tool_cards:
        destination.write(f"[{card.status}] {card.tool_name} {', '.join(card.target_ranges)}\n")
    reply = next((message for message in reversed(runner.session.messages) if message.role == "assistant"), None)
    if reply is not None:
        destination.write(f"{reply.content}\n")
    if record is not None and record.edited_ranges:
        destination.write(f"Edited: {', '.join(record.edited_ranges)}\n")


def _auto_approve(request: ApprovalRequest) -> bool:
    _LOGGER.info("Auto-approving %s", request.tool_name)
    return True


def _prompt_for_approval(request: ApprovalRequest) -> bool:
    print(f"\nApprove {request.tool_name}? {request.reason}", file=sys.stderr)
    print(f"  args: {json.dumps(dict(request.args), ensure_ascii=False, default=str)[:500]}", file=sys.stderr)
    if request.risk is not None:
        print(f"  risk: {request.risk.reason}", file=sys.stderr)
    print("  [y/N] ", end="", file=sys.stderr, flush=True)
    answer = sys.stdin.readline()
    return answer.strip().lower() in {"y", "yes"}


def _print_cost_summary(turns: Sequence[TurnRecord], stream: TextIO | None = None) -> None:
    summary = estimate_gemini_cost(turns)
    if not summary.turn_count:
        return
    destination = stream or sys.stderr
    destination.write(
        f"Estimated Gemini cost for {summary.turn_count} turn(s): {format_usd(summary.total_billable_usd)}"
        f" (pricing as of {GEMINI_PRICING_UPDATED})\n"
    )


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cellpilot",
        description="Drive a spreadsheet through natural-language prompts.",
    )
    parser.add_argument("--workbook", metavar="PATH", help="JSON workbook to load; edits are saved back to it.")
    parser.add_argument("--prompt", help="Run a single prompt and exit. Reads prompts from stdin when omitted.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.cellpilot/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable, e.g. models.openai=gpt-4o).",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument("--yes", action="store_true", help="Approve every tool call without asking.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on stderr.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, value = parse_override(entry)
        overrides[key] = value
    return overrides


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": redacted_settings(settings), "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("CELLPILOT_"))


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
