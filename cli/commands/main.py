"""Main CLI interface using Typer."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn
from rich.table import Table

from subtrans.core.checkpoint import lookup
from subtrans.core.config import PipelineConfig, ProviderConfig
from subtrans.core.exceptions import SubTransError
from subtrans.core.models import JobOptions, JobProgress, RotationMode, WorkflowMode
from subtrans.core.orchestrator import TranslationService
from subtrans.sources.srt import SrtSource
from subtrans.translation.backends import create_backend
from subtrans.utils.cache import DiskCacheStore
from subtrans.utils.config_loader import load_config, override_with_env
from subtrans.utils.logger import setup_logger

app = typer.Typer(
    name="subtrans",
    help="SubTrans: subtitle translation with key rotation and partial delivery",
    add_completion=False
)

console = Console()


def _load(config_path: Optional[Path], provider: Optional[str], model: Optional[str]) -> PipelineConfig:
    config = load_config(str(config_path) if config_path else None)
    if provider:
        raw = override_with_env({"providers": [{"name": provider, "model": model}]})
        config.providers = [ProviderConfig.from_dict(raw["providers"][0])]
    elif model and config.providers:
        config.providers[0].model = model
    return config


@app.command()
def translate(
    input_file: Path = typer.Argument(..., help="Input .srt file"),
    target_lang: str = typer.Option(..., "-t", "--target", help="Target language"),
    source_lang: str = typer.Option("auto", "-s", "--source", help="Source language"),
    output: Optional[Path] = typer.Option(None, "-o", "--output", help="Output file path"),
    config_path: Optional[Path] = typer.Option(None, "-c", "--config", help="YAML configuration file"),
    provider: Optional[str] = typer.Option(None, "-p", "--provider", help="Provider (openai/anthropic/deepl/deepseek/...)"),
    model: Optional[str] = typer.Option(None, "-m", "--model", help="Model name"),
    workflow: WorkflowMode = typer.Option(WorkflowMode.NUMBERED, "-w", "--workflow", help="Request/response format"),
    stream: bool = typer.Option(False, "--stream/--no-stream", help="Stream provider output"),
    rotation: RotationMode = typer.Option(RotationMode.PER_BATCH, "--rotation", help="Credential rotation granularity"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Custom instructions ({target_language} is substituted)"),
    user: str = typer.Option("cli", "--user", help="User id for the concurrency cap"),
):
    """Translate a SubRip subtitle file."""

    if not input_file.exists():
        console.print(f"[red]Error: Input file not found: {input_file}[/red]")
        raise typer.Exit(1)

    if output is None:
        output = input_file.with_name(f"{input_file.stem}.{target_lang}.srt")

    try:
        config = _load(config_path, provider, model)
        setup_logger(level=config.log_level, log_file=config.log_file)

        entries, source, target = SrtSource(str(input_file), target_lang, source_lang).load()
        options = JobOptions(workflow=workflow, streaming=stream, rotation_mode=rotation, custom_prompt=prompt)

        console.print(f"[bold blue]SubTrans Translation[/bold blue]")
        console.print(f"Input: {input_file} ({len(entries)} entries)")
        console.print(f"Output: {output}")
        console.print(f"Translation: {source} → {target}")
        console.print(f"Providers: {', '.join(p.name for p in config.providers)}\n")

        result = asyncio.run(_run_job(config, entries, source, target, options, user))
    except SubTransError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"Fingerprint: [dim]{result.fingerprint}[/dim]")
    if result.failed:
        console.print(f"[red]Translation failed ({result.error['error_type']}): {result.error['message']}[/red]")
        raise typer.Exit(1)

    SrtSource.write(str(output), result.merged_text)
    console.print("\n[bold green]Translation Complete![/bold green]")
    console.print(f"Output: {output}")


async def _run_job(config, entries, source, target, options, user) -> JobProgress:
    service = TranslationService(config)
    last = None
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=30),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=False
        ) as progress:
            task = progress.add_task("[cyan]Translating...", total=max(len(entries), 1))
            async for event in service.submit_job(entries, source, target, options, user_id=user):
                last = event
                progress.update(task, completed=event.translated_count, description=f"[cyan]{event.translated_count}/{event.total_entries} entries")
            if last is not None and last.is_complete:
                progress.update(task, completed=max(len(entries), 1), description="[green]✓ Translation complete")
        await service.wait_for_jobs()
    finally:
        service.close()
    return last


@app.command()
def status(
    fingerprint: str = typer.Argument(..., help="Job fingerprint"),
    config_path: Optional[Path] = typer.Option(None, "-c", "--config", help="YAML configuration file"),
    show_text: bool = typer.Option(False, "--text", help="Print the merged subtitle text"),
):
    """Show the cached state of a translation job."""
    config = load_config(str(config_path) if config_path else None)
    store = DiskCacheStore(config.cache_dir)
    try:
        record = lookup(store, fingerprint)
    finally:
        store.close()

    if record is None:
        console.print(f"[yellow]No record for {fingerprint}[/yellow]")
        raise typer.Exit(1)

    progress = JobProgress.from_record(fingerprint, record)
    table = Table(show_header=False, box=None)
    table.add_row("[bold]Record:[/bold]", record.get("kind", "?"))
    if progress.failed:
        table.add_row("[bold]Error:[/bold]", f"[red]{progress.error['error_type']}[/red]")
        table.add_row("[bold]Message:[/bold]", str(progress.error["message"]))
    else:
        table.add_row("[bold]Progress:[/bold]", f"{progress.translated_count}/{progress.total_entries}")
        table.add_row("[bold]Complete:[/bold]", "yes" if progress.is_complete else "no")
        if record.get("unresolved_count"):
            table.add_row("[bold]Unresolved:[/bold]", str(record["unresolved_count"]))
    console.print(table)

    if show_text and progress.merged_text:
        console.print(progress.merged_text)


@app.command()
def backends(config_path: Optional[Path] = typer.Option(None, "-c", "--config", help="YAML configuration file")):
    """List configured providers and whether their credentials are present."""
    config = load_config(str(config_path) if config_path else None)

    console.print("\n[bold]Configured Translation Providers[/bold]\n")
    providers = [(p, False) for p in config.providers]
    if config.fallback_provider:
        providers.append((config.fallback_provider, True))

    for provider, is_fallback in providers:
        label = f"{provider.name} ({provider.model or 'default model'})" + (" [fallback]" if is_fallback else "")
        try:
            backend = create_backend(provider.name, provider.api_keys[0] if provider.api_keys else None, provider.model, provider.base_url)
        except SubTransError as e:
            console.print(f"[red]✗ Error[/red] {label}: {e.message}")
            continue
        if backend.is_available():
            console.print(f"[green]✓ Available[/green] {label}: {len(provider.api_keys)} key(s)")
        else:
            console.print(f"[yellow]✗ Not configured[/yellow] {label}")


def cli():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    cli()
