"""Command line interface for GeoPhoto."""

import asyncio
import base64
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from geophoto.context import get_default_context
from geophoto.endpoints import EndpointProber
from geophoto.error_handling import MediaPipelineError
from geophoto.references import candidate_references
from geophoto.runtime import init_runtime
from geophoto.scanner import BoundedRecursiveScanner, sort_paths
from geophoto.utils import format_file_size, save_image_bytes, validate_api_keys


console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _fail(error: MediaPipelineError) -> None:
    console.print(f"[red]❌ {error.category.value}: {error.message}[/red]")
    if error.diagnostics:
        console.print_json(json.dumps(error.diagnostics, default=str))
    raise SystemExit(1)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """GeoPhoto - resolve scenario images and generate AI fire-scene photos."""
    _configure_logging(verbose)


@cli.command()
@click.argument('reference')
@click.option('--bucket', help='Bucket host for store-relative paths')
def candidates(reference: str, bucket: str | None):
    """Show the ranked candidate references for REFERENCE."""
    context = get_default_context()
    try:
        refs = candidate_references(reference, bucket or context.storage_bucket)
    except MediaPipelineError as e:
        _fail(e)

    table = Table(title="Candidates")
    table.add_column("#", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Locator")
    for index, ref in enumerate(refs, 1):
        table.add_row(str(index), ref.kind.value, str(ref))
    console.print(table)


@cli.command()
@click.argument('root', default='')
@click.option('--max-depth', type=int, default=3, show_default=True, help='Deepest folder level to descend into')
@click.option('--max-files', type=int, default=500, show_default=True, help='Stop after this many files')
@click.option('--urls/--no-urls', default=False, help='Also resolve download URLs for each file')
def scan(root: str, max_depth: int, max_files: int, urls: bool):
    """List image files under ROOT in the object store."""
    runtime = init_runtime()
    scanner = BoundedRecursiveScanner(runtime.resolver, max_depth=max_depth, max_files=max_files)

    async def _run():
        report = await scanner.scan_report(root)
        paths = sort_paths(report.files)
        resolved = {}
        if urls:
            from geophoto.materializer import ConcurrentURLMaterializer

            materializer = ConcurrentURLMaterializer(
                runtime.resolver,
                pool_size=runtime.context.materializer_concurrency,
                progress=lambda done, total: console.log(f"Resolved {done}/{total}"),
            )
            resolved = dict(await materializer.resolved_pairs(paths))
        return report, paths, resolved

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(f"Scanning {root or '/'}...", total=None)
        report, paths, resolved = asyncio.run(_run())

    table = Table(title=f"{len(paths)} file(s) under {root or '/'}")
    table.add_column("Path", style="cyan")
    if urls:
        table.add_column("URL")
    for path in paths:
        if urls:
            table.add_row(path, resolved.get(path) or "[red]unresolved[/red]")
        else:
            table.add_row(path)
    console.print(table)

    if report.truncated:
        console.print(f"[yellow]⚠️  Stopped at the {max_files} file cap[/yellow]")
    for error in report.errors:
        console.print(f"[yellow]⚠️  {error['path'] or '/'}: {error['error']}[/yellow]")


@cli.command()
@click.option('--base-url', help='Origin relative endpoints resolve against')
@click.option('--endpoint', 'endpoints', multiple=True, help='Endpoint to try before the defaults')
@click.option('--timeout', type=float, default=3.5, show_default=True)
def probe(base_url: str | None, endpoints: tuple, timeout: float):
    """Find the first reachable generation endpoint."""
    context = get_default_context()
    prober = EndpointProber(
        base_url or context.endpoint_base_url,
        list(endpoints) or context.endpoint_overrides,
        timeout=timeout,
    )
    result = asyncio.run(prober.probe())
    if result is None:
        console.print("[yellow]No endpoint answered; callers will use the default order[/yellow]")
        raise SystemExit(2)
    console.print(f"[green]✅ {result.url} answered {result.status} in {result.latency * 1000:.0f}ms[/green]")


@cli.command()
@click.argument('base_image')
@click.option('--mask', help='Mask image locator')
@click.option('--prompt', default='', help='Free-text notes')
@click.option('--style', type=click.Choice(['realistic', 'dramatic', 'training'], case_sensitive=False), default='realistic', show_default=True)
@click.option('--strength', type=click.FloatRange(0.0, 1.0), help='Strength in [0, 1]')
@click.option('--return-mode', type=click.Choice(['photo', 'overlays']), default='photo', show_default=True)
@click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path), help='Save the generated image here')
def generate(base_image: str, mask: str | None, prompt: str, style: str, strength: float | None,
             return_mode: str, output: Path | None):
    """Generate an edited photo from BASE_IMAGE."""
    runtime = init_runtime()
    keys = validate_api_keys()
    if not (keys['openai'] or keys['replicate']):
        console.print("[yellow]⚠️  Neither OPENAI_API_KEY nor REPLICATE_API_TOKEN is set[/yellow]")

    request = {
        'base_image': base_image,
        'mask': mask,
        'prompt': prompt,
        'style': style,
        'strength': strength,
        'return_mode': return_mode,
    }

    async def _run():
        result = await runtime.orchestrator.generate(request)
        saved = None
        if output is not None:
            fetched = await runtime.resolver.resolve(result.image)
            saved = save_image_bytes(fetched.data, output)
        return result, saved

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            progress.add_task("Generating...", total=None)
            result, saved = asyncio.run(_run())
    except MediaPipelineError as e:
        _fail(e)

    image = result.image if not result.image.startswith("data:") else (
        f"inline image ({format_file_size(len(base64.b64decode(result.image.split(',', 1)[1])))})"
    )
    lines = [
        f"[bold green]✅ Generated with {result.model}[/bold green]",
        f"[cyan]• Image: {image}[/cyan]",
        f"[cyan]• Providers tried: {', '.join(result.diagnostics.get('attempted_providers', []))}[/cyan]",
    ]
    if result.overlay:
        lines.append("[cyan]• Overlay: included[/cyan]")
    if saved:
        lines.append(f"[cyan]• Saved to: {saved}[/cyan]")
    console.print(Panel.fit("\n".join(lines), title="Generation", border_style="green"))


@cli.command()
@click.option('--host', default='127.0.0.1', show_default=True)
@click.option('--port', type=int, default=8000, show_default=True)
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host: str, port: int, reload: bool):
    """Run the HTTP API."""
    from geophoto.web.app import run_server

    console.print(Panel.fit(
        f"[bold green]🚀 Starting GeoPhoto API[/bold green]\n\n"
        f"[cyan]• Server: http://{host}:{port}[/cyan]\n"
        f"[yellow]Access API docs at: http://{host}:{port}/docs[/yellow]",
        title="API Server",
        border_style="green"
    ))
    run_server(host=host, port=port, reload=reload)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
