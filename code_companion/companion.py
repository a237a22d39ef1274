#!/usr/bin/env python3
"""
Code Companion CLI

Context-aware chat against DeepSeek / OpenRouter models with response caching
and a hard daily spend ceiling.

Usage:
    code-companion ask "Why does parse() return None?" --file src/app.py --line 42
    code-companion models                      # List the aggregated catalog
    code-companion cost                        # Show today's spend
    code-companion cost --set-limit 10         # Change the daily limit
    code-companion status                      # Provider / config check
    code-companion serve --port 8765           # HTTP API for a UI layer
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from loguru import logger

from code_companion.modules.collaborators import (
    Collaborators,
    EnvSecretStore,
    FileEditorContext,
    LocalWorkspaceReader,
)
from code_companion.modules.config import CompanionConfig, load_config
from code_companion.modules.orchestrator import RequestOrchestrator, build_orchestrator
from code_companion.modules.schemas import TaskType


VERSION = "Code Companion v1.0"


# Configure loguru
def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging with loguru."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
        )


def _parse_selection(raw: Optional[str]) -> Optional[Tuple[int, int]]:
    if not raw:
        return None
    start, _, end = raw.partition(":")
    return int(start), int(end or start)


def build_from_args(args: argparse.Namespace, config: CompanionConfig) -> RequestOrchestrator:
    workspace_root = Path(getattr(args, "workspace", None) or ".")
    editor = None
    if getattr(args, "file", None):
        editor = FileEditorContext(
            Path(args.file),
            line=args.line,
            radius=config.context.surrounding_lines,
            selection=_parse_selection(args.selection),
        )

    collaborators = Collaborators(
        secrets=EnvSecretStore(),
        editor=editor,
        workspace=LocalWorkspaceReader(workspace_root),
    )
    return build_orchestrator(config, collaborators)


# =============================================================================
# COMMANDS
# =============================================================================


async def cmd_ask(args: argparse.Namespace, config: CompanionConfig) -> int:
    orchestrator = build_from_args(args, config)
    result = await orchestrator.orchestrate(
        args.message,
        selected_model_id=args.model,
        task_type=args.task,
    )

    if args.json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0 if result.ok else 1

    if not result.ok:
        logger.error(result.error_message)
        return 1

    print(result.content)
    if result.usage:
        cached = " (cached)" if result.cached else ""
        logger.info(
            f"{result.model}{cached}: {result.usage.input_tokens} in / {result.usage.output_tokens} out, "
            f"${result.usage.total_cost:.6f}"
        )
    if result.context_summary:
        logger.debug(f"Context: {result.context_summary}")
    return 0


async def cmd_models(args: argparse.Namespace, config: CompanionConfig) -> int:
    orchestrator = build_from_args(args, config)
    catalog = await orchestrator.get_catalog()
    if args.json:
        print(json.dumps([m.model_dump(mode="json") for m in catalog], indent=2))
        return 0

    if not catalog:
        logger.warning("No models available. Set DEEPSEEK_API_KEY and/or OPENROUTER_API_KEY.")
        return 1

    for m in catalog:
        pricing = m.cost_per_1k_tokens
        print(f"{m.provider:<11} {m.id:<40} {m.max_tokens:>7}  ${pricing.input:.4f}/${pricing.output:.4f} per 1k")
    return 0


async def cmd_cost(args: argparse.Namespace, config: CompanionConfig) -> int:
    orchestrator = build_from_args(args, config)
    ledger = orchestrator.ledger

    if args.reset:
        await ledger.reset_daily_cost()
    if args.set_limit is not None:
        try:
            await ledger.update_daily_limit(args.set_limit)
        except ValueError as e:
            logger.error(str(e))
            return 2

    snapshot = orchestrator.get_cost_snapshot()
    if args.json:
        print(json.dumps({**snapshot.model_dump(mode="json"), "state": ledger.state.value}, indent=2))
        return 0

    print(f"Daily usage : ${snapshot.daily_usage:.4f} / ${snapshot.daily_limit:.2f} ({ledger.state.value})")
    print(f"Total usage : ${snapshot.total_usage:.4f}")
    print(f"Last reset  : {snapshot.last_reset:%Y-%m-%d %H:%M:%S}")
    return 0


async def cmd_status(args: argparse.Namespace, config: CompanionConfig) -> int:
    orchestrator = build_from_args(args, config)
    statuses = orchestrator.router.get_provider_status()

    for s in statuses:
        mark = "✓" if s.models_available else "✗"
        logger.info(f"{mark} {s.provider}: configured={s.configured} available={s.models_available}")

    if not any(s.models_available for s in statuses):
        logger.error("✗ No providers configured - chat requests will fail")
        return 1

    catalog = await orchestrator.get_catalog()
    default = config.providers.default_model
    if default and default not in {m.id for m in catalog}:
        logger.warning(f"⚠ Default model {default!r} is not in the catalog; the first available model will be used")
    logger.info(f"{len(catalog)} model(s) available, daily limit ${config.cost.daily_limit:.2f}")
    return 0


def cmd_serve(args: argparse.Namespace, config: CompanionConfig) -> int:
    import uvicorn

    from code_companion.modules.api import create_app

    app = create_app(build_from_args(args, config))
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", "-c", type=str, default="config.yaml", help="Path to configuration file (default: config.yaml)")
    p.add_argument("--workspace", "-w", type=str, default=".", help="Workspace root for project context (default: .)")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable verbose/debug output")
    p.add_argument("--log-file", type=str, help="Path to log file (optional)")
    p.add_argument("--json", action="store_true", help="Print machine-readable JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=VERSION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  DEEPSEEK_API_KEY              - DeepSeek models (primary)
  OPENROUTER_API_KEY            - OpenRouter models (optional)
  COMPANION_DAILY_LIMIT         - Override the daily spend limit (USD)
  COMPANION_DEFAULT_MODEL       - Override the default model id
  COMPANION_CONTEXT_MAX_TOKENS  - Override the context token cap
  COMPANION_STATE_FILE          - JSON file holding the cost tracker
""",
    )
    parser.add_argument("--version", action="version", version=VERSION)
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    ask = subparsers.add_parser("ask", help="Send one chat turn")
    ask.add_argument("message", type=str, help="The question or instruction")
    ask.add_argument("--model", "-m", type=str, help="Model id (default: configured default model)")
    ask.add_argument(
        "--task", "-t", type=str, default=TaskType.GENERAL.value,
        choices=[t.value for t in TaskType], help="Task type (affects context ranking)",
    )
    ask.add_argument("--file", "-f", type=str, help="File the editor is focused on")
    ask.add_argument("--line", "-l", type=int, default=1, help="Cursor line in --file (1-based)")
    ask.add_argument("--selection", "-s", type=str, help="Selected line range in --file, e.g. 10:24")
    _add_common(ask)

    models = subparsers.add_parser("models", help="List available models")
    _add_common(models)

    cost = subparsers.add_parser("cost", help="Show or change daily spend")
    cost.add_argument("--reset", action="store_true", help="Reset today's usage to zero")
    cost.add_argument("--set-limit", type=float, help="New daily limit in USD")
    _add_common(cost)

    status = subparsers.add_parser("status", help="Check provider configuration")
    _add_common(status)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)
    _add_common(serve)

    return parser


COMMANDS = {
    "ask": cmd_ask,
    "models": cmd_models,
    "cost": cmd_cost,
    "status": cmd_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, getattr(args, "log_file", None))

    config = load_config(args.config)

    try:
        if args.command == "serve":
            return cmd_serve(args, config)
        return asyncio.run(COMMANDS[args.command](args, config))
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
