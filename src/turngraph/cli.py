"""
Command-line interface for turngraph.
"""

import argparse
import asyncio
import logging
import signal
import sys

import structlog

from .config import Settings, get_settings
from .errors import AgentDefinitionError, ContextOverflowError, FlowNotFoundError, TurnCancelledError
from .graph.engine import TurnEngine
from .graph.state import ExecutionState, TurnStatus
from .tools.builtin import ASK_USER

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_CANCELLED = 130


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging with a console renderer."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="turngraph",
        description="turngraph - agent turns with context compression and delegation",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run a single agent on a task")
    run_parser.add_argument("task", help="Task for the agent")
    run_parser.add_argument("--agent", help="Agent definition file (.md with frontmatter)")
    run_parser.add_argument(
        "--agents-dir",
        action="append",
        default=[],
        help="Directory of agent definitions available as sub-agents (repeatable)",
    )
    run_parser.add_argument("--provider", choices=["anthropic", "openai", "openrouter"], help="LLM provider")
    run_parser.add_argument("--model", help="Model name")

    multi_parser = subparsers.add_parser("multi-agent", help="Run the supervisor/planner/implementer setup")
    multi_parser.add_argument("task", help="Task for the supervisor")
    multi_parser.add_argument("--provider", choices=["anthropic", "openai", "openrouter"], help="LLM provider")
    multi_parser.add_argument("--model", help="Model name")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    compression_parser = subparsers.add_parser("compression", help="Inspect persisted compression records")
    compression_subparsers = compression_parser.add_subparsers(dest="compression_command")
    show_parser = compression_subparsers.add_parser("show", help="Show a session's summaries")
    show_parser.add_argument("--session", help="Session key (omit to list sessions)")
    clear_parser = compression_subparsers.add_parser("clear", help="Delete a session's summaries")
    clear_parser.add_argument("--session", required=True, help="Session key")

    return parser


def main() -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    if args.command == "run":
        sys.exit(asyncio.run(run_task(args.task, args.agent, args.provider, args.model, args.agents_dir)))
    elif args.command == "multi-agent":
        sys.exit(asyncio.run(run_multi_agent(args.task, args.provider, args.model)))
    elif args.command == "config":
        sys.exit(show_config(settings, args.check))
    elif args.command == "compression":
        if args.compression_command == "show":
            asyncio.run(show_compression(settings, args.session))
        elif args.compression_command == "clear":
            asyncio.run(clear_compression(settings, args.session))
        else:
            parser.parse_args(["compression", "--help"])
    else:
        parser.print_help()


def _llm_override(settings: Settings, provider: str | None, model: str | None):
    if provider is None and model is None:
        return None
    from .llm.factory import create_llm

    return create_llm(settings.get_llm_config(provider=provider, model=model))


async def drive(engine: TurnEngine, task: str) -> int:
    """Run turns until the agent finishes, answering ``ask_user`` from stdin."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handles_sigint = True
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        handles_sigint = False
        logger.debug("Signal handlers unavailable, Ctrl-C will not cancel gracefully")

    try:
        return await _drive_turns(engine, task, cancel_event)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


async def _drive_turns(engine: TurnEngine, task: str, cancel_event: asyncio.Event) -> int:
    state = ExecutionState.from_input(task)

    while True:
        try:
            state = await engine.run(state, cancel_event=cancel_event)
        except TurnCancelledError:
            print("\nCancelled.", file=sys.stderr)
            return EXIT_CANCELLED
        except (ContextOverflowError, FlowNotFoundError) as e:
            logger.error("Turn aborted", error=str(e))
            return EXIT_ERROR

        if state.status is TurnStatus.ERROR:
            print(f"Error: {state.metadata.get('error')}", file=sys.stderr)
            for entry in state.metadata.get("trail", []):
                print(f"  {entry}", file=sys.stderr)
            return EXIT_ERROR

        if state.status is TurnStatus.EXHAUSTED:
            print(f"Stopped: {state.metadata.get('error')}", file=sys.stderr)
            return EXIT_EXHAUSTED

        print(state.output or "")

        if state.metadata.get("terminal_tool") != ASK_USER or not sys.stdin.isatty():
            return EXIT_OK

        answer = (await asyncio.to_thread(input, "> ")).strip()
        if not answer:
            return EXIT_OK
        state = state.reset().add_user_message(answer)


async def run_task(
    task: str,
    agent_file: str | None,
    provider: str | None,
    model: str | None,
    agents_dirs: list[str] | None = None,
) -> int:
    """Run a single agent."""
    from .agents.builder import build_agent_engine
    from .agents.definition import discover_agent_definitions, parse_agent_file

    settings = get_settings()
    try:
        definition = parse_agent_file(agent_file) if agent_file else None
        definitions = discover_agent_definitions(*agents_dirs) if agents_dirs else None
    except AgentDefinitionError as e:
        logger.error("Invalid agent definition", error=str(e))
        return EXIT_ERROR

    engine = await build_agent_engine(
        definition,
        settings=settings,
        llm=_llm_override(settings, provider, model),
        provider=provider,
        definitions=definitions,
    )
    logger.info("Starting agent", agent=engine.name)
    return await drive(engine, task)


async def run_multi_agent(task: str, provider: str | None, model: str | None) -> int:
    """Run the supervisor with its planner and implementer flows."""
    from .agents.builder import build_multi_agent_engine

    settings = get_settings()
    engine = await build_multi_agent_engine(
        settings=settings,
        llm=_llm_override(settings, provider, model),
        provider=provider,
    )
    logger.info("Starting multi-agent run", agent=engine.name)
    return await drive(engine, task)


async def show_compression(settings: Settings, session: str | None) -> None:
    """Show persisted summaries."""
    from .agents.builder import create_compression_store

    store = await create_compression_store(settings)

    if session is None:
        keys = await store.list_keys()
        if not keys:
            print("No persisted compression records.")
            return
        for key in keys:
            print(key)
        return

    record = await store.load(session)
    if record is None or record.is_empty:
        print(f"No summaries for session '{session}'.")
        return

    print(f"\n=== Session {session} ===")
    print(f"Compressions: {record.compression_count}  Merges: {record.merge_count}  "
          f"Entries: {len(record)}/{record.max_count}\n")
    for entry in record.entries:
        merged = f" (merged from {', '.join(map(str, entry.merged_from))})" if entry.merged_from else ""
        print(f"[{entry.sequence}]{merged}")
        print(f"  {entry.summary}\n")


async def clear_compression(settings: Settings, session: str) -> None:
    """Delete persisted summaries."""
    from .agents.builder import create_compression_store

    store = await create_compression_store(settings)
    if await store.delete(session):
        print(f"Cleared compression record for '{session}'.")
    else:
        print(f"No compression record for '{session}'.")


def show_config(settings: Settings, check: bool) -> int:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    llm = settings.get_llm_config()

    print("\n=== turngraph Configuration ===\n")

    print("LLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Default Model: {llm.model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Context Budget: {settings.max_context_tokens} tokens")

    print("\nCompression:")
    print(f"  Enabled: {settings.compression_enabled}")
    print(f"  Threshold: {settings.compression_threshold}")
    print(f"  Max Summaries: {settings.compression_max_count}")
    print(f"  Max Tokens/Summary: {settings.compression_max_tokens}")
    print(f"  Model: {settings.compression_model or '(default model)'}")
    print(f"  Store: {settings.compression_store}"
          f" ({settings.compression_path if settings.compression_store == 'json' else settings.database_url})")

    print("\nEngine:")
    print(f"  Max Model Calls/Turn: {settings.max_turn_steps}")
    print(f"  Mode: {settings.agent_mode}")
    print(f"  MCP Tools: {settings.mcp_tools_enabled}")
    print(f"  Excluded Tools: {', '.join(settings.excluded_tools_list) or '(none)'}")

    if not check:
        return EXIT_OK

    print("\n=== Configuration Check ===\n")
    errors = []
    warnings = []

    if not llm.api_key:
        errors.append(f"API key for the default provider '{settings.default_provider}' is not set")

    if settings.compression_enabled and settings.max_context_tokens < 4 * settings.compression_max_tokens:
        warnings.append("MAX_CONTEXT_TOKENS is very small compared to COMPRESSION_MAX_TOKENS")

    if settings.agent_mode == "autonomous" and "ask_user" not in settings.excluded_tools_list:
        warnings.append("Autonomous mode hides ask_user from every agent")

    if errors:
        print("Errors:")
        for e in errors:
            print(f"   - {e}")

    if warnings:
        print("Warnings:")
        for w in warnings:
            print(f"   - {w}")

    if not errors and not warnings:
        print("Configuration looks good!")
        return EXIT_OK
    elif not errors:
        print("\nConfiguration is valid (with warnings)")
        return EXIT_OK

    print("\nConfiguration has errors - fix them before running")
    return EXIT_ERROR


if __name__ == "__main__":
    main()
