"""CLI interface for ContextShield.

Runs the engine against JSON files. Settings come from
~/.contextshield/config.yaml (or $CONTEXTSHIELD_CONFIG).

Quick start:
    contextshield score context.json              # Importance of every branch
    contextshield resist context.json -o out.json # Protect a context
    contextshield compress context.json -o c.json # Compress a context
    contextshield decompress c.json               # ...and back
    contextshield reconstruct c.json              # Full reconstruction pipeline
    contextshield config --show                   # Current settings
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from contextshield import __version__
from contextshield.config import ResistOptions, get_config_path, load_config, save_config
from contextshield.engine.coordinator import ResistanceCoordinator
from contextshield.engine.tree import dotted, serialized_size
from contextshield.errors import ContextShieldError

app = typer.Typer(
    name="contextshield",
    help="Context resilience engine - score, compress and protect contexts",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine logs"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _read_json(path: Path) -> Any:
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {path}: {e}[/red]")
        raise typer.Exit(1)


def _write_json(data: Any, output: Path | None) -> None:
    if output is None:
        console.print_json(data=data)
        return
    output.write_text(json.dumps(data, indent=2, ensure_ascii=False))
    console.print(f"[green]Wrote {output}[/green]")


def _coordinator() -> ResistanceCoordinator:
    return ResistanceCoordinator(load_config())


@app.command()
def version() -> None:
    """Show the ContextShield version."""
    console.print(f"contextshield {__version__}")


@app.command()
def score(
    file: Path = typer.Argument(..., help="JSON context file"),
) -> None:
    """Score every branch of a context."""
    context = _read_json(file)
    engine = _coordinator()

    try:
        scores = engine.score_context(context)
    except ContextShieldError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Importance ({file.name})")
    table.add_column("Path", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Flags")

    for path, result in sorted(scores.items(), key=lambda item: -item[1].score):
        flags = []
        if result.features.system_critical:
            flags.append("[red]critical[/red]")
        if result.features.user_marked:
            flags.append("[yellow]marked[/yellow]")
        if result.features.is_depended_upon:
            flags.append("depended-upon")
        table.add_row(
            dotted(path),
            f"{result.score:.3f}",
            f"{result.confidence:.2f}",
            " ".join(flags) or "-",
        )

    console.print(table)
    console.print(f"[dim]Mean importance: {engine.average_importance(scores):.3f}[/dim]")


@app.command()
def compress(
    file: Path = typer.Argument(..., help="JSON context file"),
    level: str = typer.Option(
        None, "--level", "-l", help="none|light|moderate|heavy (default: by size)"),
    compress_critical: bool = typer.Option(
        False, "--compress-critical", help="Also compress critical data (light level)"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the state here"),
) -> None:
    """Compress a context, leaving critical data readable."""
    context = _read_json(file)
    engine = _coordinator()

    try:
        options = ResistOptions(level=level, compress_critical=compress_critical)
        state = engine.compress(context, options)
    except ValidationError as e:
        console.print(f"[red]Invalid options: {e.errors()[0]['msg']}[/red]")
        raise typer.Exit(1)
    except ContextShieldError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"Level: {state['level']}\n"
        f"Size: {state['original_size']:,} -> {state['compressed_size']:,} bytes\n"
        f"Ratio: {state['compression_ratio']:.1%}\n"
        f"Critical fields: {len(state['critical'])}",
        title="Compressed",
        border_style="cyan",
    ))
    if output:
        _write_json(state, output)


@app.command()
def decompress(
    file: Path = typer.Argument(..., help="Compressed state file"),
    strict: bool = typer.Option(
        False, "--strict", help="Fail on entries that do not decode"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the context here"),
) -> None:
    """Decompress a compressed state."""
    state = _read_json(file)
    engine = _coordinator()

    try:
        context = engine.decompress(state, strict=strict)
    except ContextShieldError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    passthroughs = engine.compressor.get_stats()["passthroughs"]
    if passthroughs:
        console.print(f"[yellow]{passthroughs} entries passed through undecoded[/yellow]")
    _write_json(context, output)


@app.command()
def reconstruct(
    file: Path = typer.Argument(..., help="Compressed state file"),
) -> None:
    """Run the full reconstruction pipeline on a state."""
    state = _read_json(file)
    engine = _coordinator()

    result = asyncio.run(engine.reconstruct(state))

    table = Table(title="Reconstruction")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    status = "[green]ok[/green]" if result.success else "[red]degraded[/red]"
    table.add_row("Status", status)
    table.add_row("Method", result.recovery_method or "pipeline")
    table.add_row("Time", f"{result.reconstruction_time * 1000:.2f} ms")

    context = result.context
    if isinstance(context, dict):
        validation = (context.get("metadata") or {}).get("validation") or {}
        if validation:
            table.add_row("Valid", str(validation.get("valid")))
            for error in validation.get("errors") or []:
                table.add_row("Error", f"[red]{error}[/red]")
        table.add_row("Top-level keys", ", ".join(map(str, context.keys())) or "-")
    if result.warning:
        table.add_row("Warning", f"[yellow]{result.warning}[/yellow]")

    console.print(table)


@app.command()
def resist(
    file: Path = typer.Argument(..., help="JSON context file"),
    strategy: str = typer.Option(
        None, "--strategy", "-s",
        help="lowMemory|highImportance|balanced|aggressive (default: auto)"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the result here"),
) -> None:
    """Protect a context against compaction."""
    context = _read_json(file)
    engine = _coordinator()

    try:
        options = ResistOptions(strategy=strategy)
    except ValidationError as e:
        console.print(f"[red]Invalid strategy: {e.errors()[0]['msg']}[/red]")
        raise typer.Exit(1)

    result = asyncio.run(engine.resist(context, options=options))
    resistance = result.metadata["resistance"]

    if result.applied:
        console.print(Panel(
            f"Strategy: {resistance['strategy']}\n"
            f"Preservation: {resistance['preservation_rate']:.1%}\n"
            f"Size: {serialized_size(context):,} -> {serialized_size(result.context):,} bytes",
            title="Resistance applied",
            border_style="green",
        ))
    else:
        console.print(Panel(
            f"Error: {resistance.get('error') or resistance.get('errors')}\n"
            f"Kept only system-critical branches.",
            title="Emergency protection",
            border_style="red",
        ))

    if output:
        _write_json(result.to_dict(), output)


@app.command()
def config(
    show: bool = typer.Option(
        False, "--show", help="Show current configuration"),
) -> None:
    """Manage ContextShield configuration."""
    config_path = get_config_path()
    settings = load_config()

    if show:
        table = Table(title=f"Configuration ({config_path})")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for key, value in settings.to_dict().items():
            table.add_row(key, str(value))
        console.print(table)
        return

    if config_path.exists():
        console.print(f"Config already exists at {config_path}")
        console.print("[dim]Edit it directly, or view it with: contextshield config --show[/dim]")
        return

    save_config(settings)
    console.print(f"[green]Wrote default configuration to {config_path}[/green]")


if __name__ == "__main__":
    app()
