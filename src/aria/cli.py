"""Aria command line entrypoint."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from loguru import logger

from aria.app.bootstrap import build_orchestrator
from aria.channels.discord import DiscordChannel, DiscordConfig
from aria.config import load_settings
from aria.core.prompt import ApproximateTokenCounter, PromptAssembler, render_turn
from aria.core.types import ConversationTurn, Role, SafetyMode
from aria.errors import ConfigurationError
from aria.logging_utils import configure_logging
from aria.personas import PersonaCatalog

app = typer.Typer(name="aria", help="Persona roleplay bot for Discord.", add_completion=False)


@app.command()
def run(
    model: str | None = typer.Option(None, "--model", help="Override the configured model"),
    token_limit: int | None = typer.Option(None, "--token-limit", help="Override the prompt token budget"),
    personas: Path | None = typer.Option(None, "--personas", help="YAML file or directory with personas"),
    proxy: str | None = typer.Option(None, "--proxy", help="Explicit proxy for the Discord gateway"),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    """Connect to Discord and serve persona replies."""
    settings = load_settings(personas_path=personas, log_level=log_level)
    configure_logging(profile="default", level=settings.log_level)

    try:
        token = settings.require_discord_token()
        orchestrator = build_orchestrator(settings, model=model, token_limit=token_limit)
    except ConfigurationError as exc:
        logger.error("cli.config.invalid error={}", exc)
        raise typer.Exit(1) from exc

    catalog = PersonaCatalog.from_path(settings.personas_path, assistant_name=settings.assistant_name)
    channel = DiscordChannel(
        orchestrator,
        catalog,
        DiscordConfig(
            token=token,
            command_prefix=settings.discord_command_prefix,
            admin_override_id=settings.admin_override_id,
            assistant_name=settings.assistant_name,
            proxy=proxy,
        ),
    )
    try:
        asyncio.run(channel.start())
    except KeyboardInterrupt:
        logger.info("cli.interrupted")


@app.command("personas")
def list_personas(
    personas: Path | None = typer.Option(None, "--personas", help="YAML file or directory with personas"),
) -> None:
    """List the personas that would be loaded."""
    settings = load_settings(personas_path=personas)
    configure_logging(profile="console", level="WARNING")
    catalog = PersonaCatalog.from_path(settings.personas_path, assistant_name=settings.assistant_name)
    if not len(catalog):
        typer.echo("No personas found.")
        return
    for name in catalog.names():
        typer.echo(name)


def _parse_turns(lines: list[str], caller: str, own_name: str) -> list[ConversationTurn]:
    turns: list[ConversationTurn] = []
    for line in lines:
        speaker, sep, text = line.partition(":")
        if not sep:
            speaker, text = caller, line
        speaker = speaker.strip()
        role = Role.ASSISTANT if speaker.casefold() == own_name.casefold() else Role.USER
        turns.append(ConversationTurn(speaker=speaker, role=role, text=text.strip()))
    return turns


@app.command("prompt")
def show_prompt(
    name: str | None = typer.Argument(None, help="Persona name; omit for the plain assistant"),
    turn: list[str] = typer.Option([], "--turn", "-t", help="History line as 'speaker: text', oldest first"),
    caller: str = typer.Option("someone", "--caller", help="Name of the requesting user"),
    safe: bool = typer.Option(False, "--safe", help="Render the safe-mode instruction"),
    token_limit: int | None = typer.Option(None, "--token-limit", help="Override the prompt token budget"),
    personas: Path | None = typer.Option(None, "--personas", help="YAML file or directory with personas"),
) -> None:
    """Assemble and print the prompt a persona would be given for an inline history."""
    settings = load_settings(personas_path=personas)
    configure_logging(profile="console", level="WARNING")
    catalog = PersonaCatalog.from_path(settings.personas_path, assistant_name=settings.assistant_name)

    persona = None
    if name is not None:
        persona = catalog.get(name)
        if persona is None:
            typer.echo(f"Unknown persona: {name}", err=True)
            raise typer.Exit(1)

    assembler = PromptAssembler(
        ApproximateTokenCounter(),
        token_limit or settings.token_limit,
        assistant_name=settings.assistant_name,
    )
    own_name = persona.display_name if persona is not None else settings.assistant_name
    mode = SafetyMode.SFW if safe else SafetyMode.NSFW
    prompt = assembler.assemble(_parse_turns(turn, caller, own_name), caller, persona, mode)

    typer.echo(prompt.system_instruction)
    typer.echo("")
    for item in prompt.turns:
        typer.echo(f"[{item.role}] {render_turn(item, own_name)}")
    typer.echo(f"-- tokens: {prompt.total_cost}/{assembler.token_limit}, turns: {len(prompt.turns)}/{len(turn)}")


if __name__ == "__main__":
    app()
