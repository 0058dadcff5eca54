"""Main entry point for chatloop."""

import asyncio
import signal
import sys

from rich.console import Console

from chatloop.config import Config, set_config
from chatloop.exceptions import ExchangeError
from chatloop.llm import create_provider
from chatloop.logging import configure_logging, get_logger
from chatloop.orchestrator import TurnOrchestrator
from chatloop.tools import build_tool_registry

log = get_logger(__name__)

console = Console(stderr=True)


async def ask(config: Config, question: str, system_prompt: str | None = None) -> int:
    """Run one exchange and stream the answer to stdout."""
    provider = create_provider(
        provider=config.model.provider,
        model=config.model.model,
        api_key=config.model.api_key or None,
        base_url=config.model.base_url,
        temperature=config.model.temperature,
        max_tokens=config.model.max_tokens,
        timeout=config.model.timeout,
    )
    tools = build_tool_registry(config.tools)
    orchestrator = TurnOrchestrator.from_config(config, provider, tools)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    def write(fragment: str) -> None:
        sys.stdout.write(fragment)
        sys.stdout.flush()

    try:
        await orchestrator.start_exchange(
            [{"role": "user", "content": question}],
            system_prompt=system_prompt,
            on_text=write,
            cancel_event=cancel_event,
        )
        sys.stdout.write("\n")
        return 0
    except ExchangeError as e:
        sys.stdout.write("\n")
        log.debug("Exchange ended with error", kind=e.kind.value, error=str(e))
        if not e.is_failure:
            console.print("[yellow]Cancelled[/yellow]")
            return 130
        console.print(f"[red]{e.kind.value}[/red]: {e}")
        return 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await tools.close()
        await provider.close()


def run() -> None:
    """Run chatloop CLI."""
    import typer

    cli = typer.Typer(help="chatloop - streaming chat with web search and browse tools")

    @cli.command("ask")
    def ask_command(
        question: str = typer.Argument(..., help="Question to ask"),
        config: str = typer.Option("", "-c", "--config", help="Path to config file"),
        model: str = typer.Option("", "-m", "--model", help="Override model"),
        system: str = typer.Option("", "-s", "--system", help="System prompt"),
        no_tools: bool = typer.Option(False, "--no-tools", help="Disable tool use"),
        verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    ) -> None:
        cfg = Config.load(config or None)
        if model:
            cfg.model.model = model
        if no_tools:
            cfg.tools.use_tools = False
        if verbose:
            cfg.logging.level = "DEBUG"
        set_config(cfg)
        configure_logging(cfg.logging)

        code = asyncio.run(ask(cfg, question, system_prompt=system or None))
        raise typer.Exit(code)

    @cli.command("models")
    def models_command() -> None:
        """List known Claude models."""
        from chatloop.llm import MODELS

        for name in MODELS:
            typer.echo(name)

    cli()


if __name__ == "__main__":
    run()
