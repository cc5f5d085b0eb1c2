"""Command-line interface for Parley.

Commands:
- parley chat: Interactive conversation on the local "cli" channel
- parley ask TEXT: Single turn, print the reply
- parley approve CODE: Approve a pairing code
- parley doctor: Preflight checks for the sandbox and model configuration
- parley stats: Store statistics
- parley telemetry tail: Show recent telemetry events
"""

from __future__ import annotations

import asyncio
import sys
import time
import uuid
from collections import deque
from pathlib import Path

import click

from .app import App, build_app
from .config import ParleyConfig, load_config
from .gate import SecurityGate
from .logging_setup import configure_logging
from .sandbox import SandboxExecutor
from .store import Store
from .types import InboundMessage

CLI_CHANNEL = "cli"


def _load(base_dir: str, config: str | None) -> ParleyConfig:
    if config:
        parley_config = ParleyConfig.load_from_file(config)
        parley_config.apply_env_overrides()
    else:
        parley_config = load_config(Path(base_dir))
    configure_logging(parley_config.logging)
    return parley_config


def _inbound(text: str, sender: str) -> InboundMessage:
    return InboundMessage(
        id=uuid.uuid4().hex,
        sender=sender,
        channel=CLI_CHANNEL,
        text=text,
        timestamp=time.time(),
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="parley")
@click.option(
    "--dir",
    "base_dir",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Directory containing parley.yml",
)
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.pass_context
def cli(ctx: click.Context, base_dir: str, config: str | None) -> None:
    """Parley - personal assistant core with sandboxed tools and agent swarms."""
    ctx.ensure_object(dict)
    ctx.obj["base_dir"] = base_dir
    ctx.obj["config"] = config


@cli.command()
@click.option("--sender", default="local", show_default=True, help="Sender id on the cli channel")
@click.pass_context
def chat(ctx: click.Context, sender: str) -> None:
    """Start an interactive conversation. Type 'exit' to quit."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    app = build_app(parley_config)
    asyncio.run(_chat(app, sender))


async def _chat(app: App, sender: str) -> None:
    await app.start()
    click.echo("Parley chat. Type 'exit' to quit.")
    try:
        while True:
            try:
                text = click.prompt("you", prompt_suffix="> ")
            except (click.Abort, EOFError):
                click.echo()
                break
            if text.strip().lower() in {"exit", "quit"}:
                break
            if not text.strip():
                continue
            reply = await app.gateway.handle(_inbound(text, sender))
            click.echo(f"parley> {reply}")
    finally:
        await app.stop()


@cli.command()
@click.argument("text")
@click.option("--sender", default="local", show_default=True, help="Sender id on the cli channel")
@click.pass_context
def ask(ctx: click.Context, text: str, sender: str) -> None:
    """Send a single message and print the reply."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    app = build_app(parley_config)
    click.echo(asyncio.run(_ask(app, text, sender)))


async def _ask(app: App, text: str, sender: str) -> str:
    await app.start()
    try:
        return await app.gateway.handle(_inbound(text, sender))
    finally:
        await app.stop()


@cli.command()
@click.argument("code")
@click.pass_context
def approve(ctx: click.Context, code: str) -> None:
    """Approve a pairing code and allowlist its sender."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    store = Store(parley_config.store.path, busy_timeout_ms=parley_config.store.busy_timeout_ms)
    store.init()
    approval = SecurityGate(parley_config.security, store).approve_pairing(code)
    if not approval.success:
        raise click.ClickException(f"Pairing code {code.upper()} is invalid, expired, or already used")
    click.echo(f"✓ Approved {approval.channel}:{approval.sender}")


@cli.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Run preflight checks (sandbox runtime, image, and model configuration)."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    ok = True

    click.echo(f"parley doctor: sandbox runtime={parley_config.sandbox.runtime}")
    click.echo(f"Sandbox image: {parley_config.sandbox.image}")
    click.echo()

    res = asyncio.run(SandboxExecutor(parley_config.sandbox).doctor())
    if res.get("ok"):
        click.echo("✓ Sandbox checks passed")
    else:
        ok = False
        click.echo("✗ Sandbox checks failed")
        if err := res.get("error"):
            click.echo(f"  Error: {err}")
        if res.get("stderr"):
            click.echo(f"  Details: {res.get('stderr')}")
    if warning := res.get("warning"):
        click.echo(f"  Warning: {warning}")

    click.echo()
    if not parley_config.llm.models:
        ok = False
        click.echo("✗ No models configured")
    for model in parley_config.llm.models:
        has_key = bool(model.resolve_api_key()) or model.provider in {"ollama", "openai-compatible"}
        status = "✓" if has_key else "✗"
        click.echo(f"  {status} {model.qualified_name} ({model.resolve_base_url()})")
        if not has_key:
            ok = False
            click.echo(f"    missing API key: set {model.api_key_env or 'api_key'}")
    known = {m.model_id for m in parley_config.llm.models} | {
        m.qualified_name for m in parley_config.llm.models
    }
    if parley_config.llm.default_model not in known:
        click.echo(f"  ! default model {parley_config.llm.default_model!r} is not configured")

    click.echo()
    if ok:
        click.echo("✓ Doctor checks passed")
        sys.exit(0)
    click.echo("✗ Doctor checks failed")
    sys.exit(1)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show store statistics."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    store = Store(parley_config.store.path, busy_timeout_ms=parley_config.store.busy_timeout_ms)
    store.init()
    counts = store.stats()
    click.echo(f"Store: {store.path}")
    click.echo(f"  Size: {counts['size_bytes'] / 1024 / 1024:.2f} MB")
    for key in ("sessions", "messages", "memory", "security_events", "allowlist"):
        click.echo(f"  {key}: {counts[key]}")


@cli.group()
def telemetry() -> None:
    """Telemetry utilities."""


@telemetry.command("tail")
@click.option(
    "--lines",
    "-n",
    type=int,
    default=50,
    show_default=True,
    help="Number of telemetry lines to show.",
)
@click.pass_context
def telemetry_tail(ctx: click.Context, lines: int) -> None:
    """Print the last N telemetry events."""
    parley_config = _load(ctx.obj["base_dir"], ctx.obj["config"])
    telemetry_path = Path(parley_config.telemetry.log_path)

    if not telemetry_path.exists():
        raise click.ClickException(f"Telemetry file not found: {telemetry_path}")

    with open(telemetry_path, encoding="utf-8") as f:
        tail = deque(f, maxlen=max(0, lines))

    for ln in tail:
        click.echo(ln, nl=False)


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
