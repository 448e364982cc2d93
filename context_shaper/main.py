"""Command line entry point for Context Shaper."""

import dataclasses
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from context_shaper.config import Config, set_config
from context_shaper.conversation import load_conversation, shape_result_to_payload
from context_shaper.exceptions import ConfigurationError, ConversationFormatError
from context_shaper.logging import configure_logging, log
from context_shaper.shaper import BudgetParameters, ShapeResult, shape_request
from context_shaper.tokens import estimate_tokens_for_message, estimate_tokens_for_tools

cli = typer.Typer(help="Context Shaper - fit chat requests into a model's context window")
console = Console()


def _setup(config: str, verbose: bool) -> Config:
    """Load configuration and configure logging."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except ConfigurationError as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _render_context_window(result: ShapeResult) -> Table:
    table = Table(title="Context window")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in result.context_window().items():
        shown = f"{value:.1%}" if key == "utilization" else str(value)
        table.add_row(key, shown)
    if result.effective_tool_choice is not None:
        table.add_row("tool_choice", str(result.effective_tool_choice))
    return table


@cli.command()
def shape(
    file: Path = typer.Argument(..., help="Conversation JSON file"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    context_length: Optional[int] = typer.Option(None, "--context-length", help="Override model context window"),
    completion_tokens: Optional[int] = typer.Option(None, "--completion-tokens", help="Override completion tokens"),
    max_messages: Optional[int] = typer.Option(None, "--max-messages", help="Override message count limit"),
    safety_margin: Optional[float] = typer.Option(None, "--safety-margin", help="Override safety margin fraction"),
    no_middle_out: bool = typer.Option(False, "--no-middle-out", help="Drop instead of compressing history"),
    output: Optional[Path] = typer.Option(None, "-o", "--output", help="Write shaped payload JSON here"),
    print_payload: bool = typer.Option(False, "--print", help="Print shaped payload JSON"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Shape a conversation file and report what changed."""
    cfg = _setup(config, verbose)
    try:
        conversation = load_conversation(file)
    except ConversationFormatError as e:
        log.error("Failed to load conversation", error=str(e))
        raise typer.Exit(code=1)

    params = BudgetParameters.from_config(
        cfg,
        context_length=context_length,
        max_completion_tokens=completion_tokens,
    )
    overrides: dict[str, object] = {}
    if max_messages is not None:
        overrides["max_messages"] = max_messages
    if safety_margin is not None:
        overrides["safety_margin_pct"] = safety_margin
    if no_middle_out:
        overrides["middle_out"] = False
    if overrides:
        params = dataclasses.replace(params, **overrides)

    result = shape_request(conversation.messages, conversation.tools, conversation.tool_choice, params)
    log.debug("Shaped conversation", file=str(file), **result.context_window())

    payload = shape_result_to_payload(result)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        log.info("Wrote shaped payload", path=str(output))
    if print_payload:
        console.print_json(json.dumps(payload, ensure_ascii=False))
    else:
        console.print(_render_context_window(result))


@cli.command()
def estimate(
    file: Path = typer.Argument(..., help="Conversation JSON file"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Print estimated tokens per message and in total."""
    _setup(config, verbose)
    try:
        conversation = load_conversation(file)
    except ConversationFormatError as e:
        log.error("Failed to load conversation", error=str(e))
        raise typer.Exit(code=1)

    table = Table(title=f"Token estimate: {file.name}")
    table.add_column("#", justify="right")
    table.add_column("Role")
    table.add_column("Chars", justify="right")
    table.add_column("Tokens", justify="right")

    total = 0
    for idx, message in enumerate(conversation.messages):
        tokens = estimate_tokens_for_message(message)
        total += tokens
        table.add_row(str(idx), message.role, str(len(message.text)), str(tokens))

    tool_tokens = estimate_tokens_for_tools(conversation.tools)
    if conversation.tools:
        table.add_row("", f"tools ({len(conversation.tools)})", "", str(tool_tokens))
    table.add_row("", "total", "", str(total + tool_tokens))
    console.print(table)


@cli.command()
def version() -> None:
    """Show version information."""
    from context_shaper import __version__
    console.print(f"Context Shaper v{__version__}")


def main() -> None:
    """Run the command line interface."""
    cli()


if __name__ == "__main__":
    main()
