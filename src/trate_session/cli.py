"""
Command-line interface for trate-session.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog

from .config import Settings, get_settings
from .errors import LLMError, PersistenceError
from .session import FileKVStore, SessionController, SessionStateStore

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="trate-session",
        description="TrateAI chat session with rolling summarization",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat")
    chat_parser.add_argument("--model", help="Chat model to use")
    chat_parser.add_argument("--temperature", type=float, help="Sampling temperature")

    subparsers.add_parser("reset", help="Forget the stored conversation")
    subparsers.add_parser("stats", help="Show the stored session state")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create a .env template")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)

    if args.command == "chat":
        asyncio.run(run_chat(settings, args.model, args.temperature))
    elif args.command == "reset":
        reset_session(settings)
    elif args.command == "stats":
        show_stats(settings)
    elif args.command == "config":
        show_config(settings, args.check)
    elif args.command == "init":
        init_env()
    else:
        parser.print_help()


def create_state_store(settings: Settings) -> SessionStateStore:
    """State store backed by files in the configured state directory."""
    return SessionStateStore(FileKVStore(settings.state_path), key=settings.state_key)


def print_snapshot_line(controller: SessionController) -> None:
    snapshot = controller.snapshot()
    stats = snapshot.stats
    print(
        f"  [in {stats.last_request_input_tokens} / out {stats.last_response_output_tokens}"
        f" / session {stats.session_total_tokens} tokens"
        f" | window {len(snapshot.turns)}/{controller.window.capacity}"
        f" | summary {snapshot.summary_length} chars"
        f"{' | compacting' if snapshot.is_compacting else ''}]"
    )


async def run_chat(settings: Settings, model: str | None = None, temperature: float | None = None) -> None:
    """Interactive chat loop."""
    from .llm import create_llm

    llm = create_llm(settings=settings)
    controller = SessionController.from_settings(llm, settings, create_state_store(settings))
    if model:
        controller.model = model
    if temperature is not None:
        controller.temperature = temperature

    print(f"Chatting with {controller.model}. Commands: /stats, /summary, /reset, /quit\n")

    try:
        while True:
            try:
                text = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break

            text = text.strip()
            if not text:
                continue

            if text in ("/quit", "/exit"):
                break
            if text == "/reset":
                controller.reset()
                print("Conversation reset.")
                continue
            if text == "/stats":
                print_snapshot_line(controller)
                continue
            if text == "/summary":
                print(controller.summary.value or "(no summary yet)")
                continue

            try:
                result = await controller.send_user_turn(text)
            except LLMError as e:
                print(f"Error: {e}")
                continue

            print(f"\nassistant> {result.reply_text}\n")
            print_snapshot_line(controller)
            if result.cost_usd:
                print(f"  [cost ~${result.cost_usd:.6f}]")
    finally:
        if controller.is_compacting:
            print("Finishing summary...")
            try:
                await asyncio.wait_for(controller.wait_for_compaction(), timeout=settings.request_timeout)
            except asyncio.TimeoutError:
                logger.warning("Gave up waiting for compaction")
        controller.close()


def reset_session(settings: Settings) -> None:
    """Remove the stored session state."""
    try:
        create_state_store(settings).clear()
    except PersistenceError as e:
        logger.error("Removing session state failed", key=settings.state_key, error=str(e))
        return
    logger.info("Session state removed", key=settings.state_key, directory=str(settings.state_path))


def show_stats(settings: Settings) -> None:
    """Print the stored session state."""
    state = create_state_store(settings).load()

    print("\n=== Stored Session ===\n")
    print(f"  Turns in window: {len(state.last_messages)}")
    print(f"  Summary: {len(state.summary)} chars")
    print(f"  Input tokens (lifetime): {state.total_input_tokens}")
    print(f"  Output tokens (lifetime): {state.total_output_tokens}")
    print(f"  Total tokens (lifetime): {state.total_tokens}")

    if state.summary:
        print("\nSummary:")
        print(state.summary)

    if state.last_messages:
        print("\nRecent turns:")
        for turn in state.last_messages:
            print(f"  {turn.role.value}: {turn.text[:100]}")


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    llm_config = settings.get_llm_config()

    print("\n=== TrateAI-Session Configuration ===\n")

    print("LLM Provider:")
    print(f"  Provider: {settings.provider}")
    print(f"  Chat Model: {llm_config.model}")
    print(f"  Summary Model: {llm_config.summary_model}")
    print(f"  Temperature: {settings.temperature}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")

    print("\nConversation:")
    print(f"  Window Size: {settings.window_size} turns")
    print(f"  Summary Language: {settings.summary_language}")
    print(f"  Summary Max Words: {settings.summary_max_words}")

    print("\nStorage:")
    print(f"  Directory: {settings.state_path}")
    print(f"  Key: {settings.state_key}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not llm_config.api_key:
            errors.append(f"{settings.provider.upper()}_API_KEY is required for provider '{settings.provider}'")

        if llm_config.model == llm_config.summary_model:
            warnings.append("Summary model equals chat model - a lighter model is cheaper")

        if settings.window_size % 2:
            warnings.append("Odd WINDOW_SIZE - the last slot of the window is never used")

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
        elif not errors:
            print("\nConfiguration is valid (with warnings)")
        else:
            print("\nConfiguration has errors - fix them before chatting")


def init_env() -> None:
    """Create a .env template."""
    env_file = Path(".env")

    if env_file.exists():
        print(f"{env_file} already exists")
        return

    env_content = """# TrateAI-Session Configuration

# LLM provider: openai, anthropic or openrouter
PROVIDER=openai

# API key for the chosen provider
OPENAI_API_KEY=
# ANTHROPIC_API_KEY=
# OPENROUTER_API_KEY=

# Models (empty = provider defaults)
# DEFAULT_MODEL=gpt-4o
# SUMMARY_MODEL=gpt-4o-mini
TEMPERATURE=0.7

# Conversation
WINDOW_SIZE=6
SUMMARY_LANGUAGE=English

# Storage
# STATE_DIR=~/.trate-session
"""
    env_file.write_text(env_content)
    print(f"Created {env_file}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and add your API key")
    print("2. Run: trate-session chat")


if __name__ == "__main__":
    main()
