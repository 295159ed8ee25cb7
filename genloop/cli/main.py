"""
CLI interface for genloop.

Provides command-line access to batch runs, the cost ledger and the
shared storage quota.
"""

import logging
import mimetypes
import signal
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from genloop.config.loader import (
    VALID_ASPECT_RATIOS,
    PipelineConfig,
    gemini_api_key,
    load_pipeline_config,
    supabase_credentials,
)
from genloop.core.batch import BatchOrchestrator
from genloop.core.events import CancellationToken, EventSink
from genloop.core.models import BatchRun, ImageBlob, ItemStatus, ProgressEvent, WorkItem
from genloop.core.pricing import CostLedger, calculate_cost
from genloop.core.quality_gate import QualityGate
from genloop.core.quota import StorageQuotaManager
from genloop.core.request_builder import BatchMode, PipelineOptions
from genloop.core.retry_controller import GenerationRetryController
from genloop.core.transport import LinearBackoff, TransientRetryClient
from genloop.sdk.gemini_client import GeminiClient
from genloop.storage.db import DEFAULT_DB_PATH
from genloop.storage.object_store import SupabaseObjectStore
from genloop.storage.repository import CostRepository, initialize_schema
from genloop.storage.templates import MAX_REFERENCE_IMAGES, TemplateLibrary, TemplateRecord
from genloop.storage.uploader import ArtifactUploader, extension_for

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}

_STATUS_STYLE = {
    ItemStatus.SUCCESS: "[green]✓ success[/]",
    ItemStatus.WARNING: "[yellow]⚠ warning[/]",
    ItemStatus.ERROR: "[red]✗ error[/]",
    ItemStatus.CANCELLED: "[dim]cancelled[/]",
}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
):
    """genloop - batch generate, verify and retry."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("genloop - Use --help to see available commands")


def _load_config(path: Optional[Path]) -> PipelineConfig:
    try:
        return load_pipeline_config(str(path) if path else None)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _transport(config: PipelineConfig, sink: Optional[EventSink] = None,
               cancel_token: Optional[CancellationToken] = None) -> TransientRetryClient:
    return TransientRetryClient(
        max_attempts=config.retry.max_http_attempts,
        wait_policy=LinearBackoff(config.retry.base_delay_seconds),
        timeout=config.retry.timeout_seconds,
        sink=sink,
        cancel_token=cancel_token,
    )


def _object_store(config: PipelineConfig, transport: TransientRetryClient) -> SupabaseObjectStore:
    url, key = supabase_credentials(config.storage)
    if not url or not key:
        console.print("[red]Storage not configured:[/] set storage.url (or SUPABASE_URL) and SUPABASE_KEY")
        sys.exit(EXIT_CODE_FAIL)
    return SupabaseObjectStore(transport, url, key, bucket=config.storage.bucket)


def _quota_manager(config: PipelineConfig, transport: TransientRetryClient) -> StorageQuotaManager:
    return StorageQuotaManager(
        _object_store(config, transport),
        hard_limit_bytes=config.storage.hard_limit_bytes,
        target_fraction=config.storage.target_fraction,
        protected_prefixes=config.storage.protected_prefixes,
    )


def _read_image(path: Path) -> ImageBlob:
    mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return ImageBlob(data=path.read_bytes(), mime_type=mime_type)


def collect_work_items(input_dir: Path) -> List[WorkItem]:
    """Image files in ``input_dir``, sorted by name."""
    files = sorted(
        p for p in input_dir.iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
    )
    return [WorkItem(id=p.stem, source_ref=p.name, subject=_read_image(p)) for p in files]


@app.command()
def init(
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Cost ledger database path")
):
    """Initialize the cost ledger database."""
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def run(
    input_dir: Path = typer.Argument(..., exists=True, file_okay=False, help="Directory of subject images"),
    mode: BatchMode = typer.Option(BatchMode.COMPOSITE, "--mode", "-m", help="Batch mode"),
    background: Optional[Path] = typer.Option(None, "--background", "-b", exists=True, dir_okay=False,
                                              help="Background image (composite mode)"),
    reference: Optional[List[Path]] = typer.Option(None, "--reference", "-r", exists=True, dir_okay=False,
                                                   help="Style reference image (template mode, repeatable)"),
    template: str = typer.Option("", "--template", "-t", help="Background description (template mode)"),
    template_id: Optional[str] = typer.Option(None, "--template-id",
                                              help="Stored template to use (implies template mode)"),
    instruction: str = typer.Option("", "--instruction", "-i", help="Extra instruction for every item"),
    aspect_ratio: Optional[str] = typer.Option(None, "--aspect-ratio", "-a", help="Output aspect ratio"),
    attempts: Optional[int] = typer.Option(None, "--attempts", min=1, help="Generation attempt budget"),
    no_qc: bool = typer.Option(False, "--no-qc", help="Skip quality verification"),
    output_dir: Path = typer.Option(Path("output"), "--output-dir", "-o", help="Where results are written"),
    upload: bool = typer.Option(False, "--upload", help="Upload results to the shared store"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Cost ledger database path"),
    strict: bool = typer.Option(False, "--strict", help="Exit with error code if any item failed")
):
    """
    Run a batch over every image in INPUT_DIR.

    Items are processed one at a time. A failed item is reported and the
    run continues. Ctrl-C stops the run after the current item.
    """
    config = _load_config(config_path)
    api_key = gemini_api_key()
    if not api_key:
        console.print("[red]Error:[/] GEMINI_API_KEY is not set")
        sys.exit(EXIT_CODE_FAIL)

    items = collect_work_items(input_dir)
    if not items:
        console.print(f"[yellow]No images found in {input_dir}[/]")
        sys.exit(EXIT_CODE_PASS)

    if aspect_ratio is not None and aspect_ratio not in VALID_ASPECT_RATIOS:
        console.print(f"[red]Error:[/] aspect_ratio must be one of: {list(VALID_ASPECT_RATIOS)}")
        sys.exit(EXIT_CODE_FAIL)

    token = CancellationToken()
    transport = _transport(config, cancel_token=token)

    references = [_read_image(p) for p in reference or []]
    if template_id:
        record, template_images = _load_template(_object_store(config, transport), template_id)
        mode = BatchMode.TEMPLATE
        template = template or record.prompt
        references = template_images + references

    try:
        options = PipelineOptions(
            mode=mode,
            instruction=instruction,
            background=_read_image(background) if background else None,
            references=tuple(references),
            template_description=template,
            aspect_ratio=aspect_ratio or config.generation.aspect_ratio,
            image_size=config.generation.image_size,
            qc_enabled=config.quality.enabled and not no_qc,
            attempt_budget=attempts or config.retry.attempt_budget,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    repository = CostRepository(db_path)
    repository.initialize()
    ledger = CostLedger(repository)
    client = GeminiClient(
        transport,
        api_key,
        ledger=ledger,
        model=config.generation.model,
        verifier_model=config.generation.verifier_model,
        api_base=config.generation.api_base,
    )
    gate = QualityGate(client, threshold=config.quality.threshold)
    controller = GenerationRetryController(client.generate, gate, cancel_token=token)
    uploader = None
    if upload:
        quota = _quota_manager(config, transport)
        uploader = ArtifactUploader(quota.store, quota, key_prefix="batch/")
    orchestrator = BatchOrchestrator(controller, uploader=uploader, cancel_token=token)

    def on_progress(event: ProgressEvent) -> None:
        console.print(f"[bold]Progress:[/] {event.current}/{event.total}")

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        batch = orchestrator.run_batch(items, options, on_progress)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _write_outputs(batch, output_dir)
    _display_batch_result(batch)
    console.print(f"\nCost this run: {_format_currency(ledger.total(config.pricing.to_table()))}")

    if strict and batch.count_by_status()[ItemStatus.ERROR]:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _load_template(store: SupabaseObjectStore, template_id: str) -> Tuple[TemplateRecord, List[ImageBlob]]:
    """Fetch a stored template and its images, exiting when it cannot be used."""
    library = TemplateLibrary(store)
    try:
        record = library.get(template_id)
        images = library.reference_images(record) if record else []
    except Exception as e:
        console.print(f"[red]Error loading template:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if record is None:
        console.print(f"[red]Error:[/] unknown template '{template_id}'")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Template {record.name or record.id}: {len(images)} reference image(s)")
    return record, images


def _write_outputs(batch: BatchRun, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    for item in batch.items:
        if item.final_result is None or item.status not in (ItemStatus.SUCCESS, ItemStatus.WARNING):
            continue
        name = f"{Path(item.source_ref).stem}_batch.{extension_for(item.final_result.mime_type)}"
        (output_dir / name).write_bytes(item.final_result.image.data)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.4f}"


def _display_batch_result(batch: BatchRun) -> None:
    """Display per-item results and the status summary."""
    table = Table(title="Batch Result")
    table.add_column("Item")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Message")
    for item in batch.items:
        table.add_row(
            item.source_ref,
            _STATUS_STYLE.get(item.status, item.status.value),
            str(len(item.attempts)),
            item.message,
        )
    console.print(table)

    counts = batch.count_by_status()
    console.print(
        f"{counts[ItemStatus.SUCCESS]} success, {counts[ItemStatus.WARNING]} warning, "
        f"{counts[ItemStatus.ERROR]} error, {counts[ItemStatus.CANCELLED]} cancelled"
    )


@app.command()
def cost(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Cost ledger database path")
):
    """Show metered units and total cost from the persisted ledger."""
    config = _load_config(config_path)
    pricing = config.pricing.to_table()
    repository = CostRepository(db_path)
    repository.initialize()
    sums = repository.sums_by_kind()

    table = Table(title="Cost Ledger")
    table.add_column("Kind")
    table.add_column("Units", justify="right")
    table.add_column("Unit price", justify="right")
    table.add_column("Cost", justify="right")
    for kind, amount in sums.items():
        price = pricing.get_price(kind)
        table.add_row(kind.value, f"{amount:,}", f"${price:.8f}".rstrip("0"), _format_currency(amount * price))
    console.print(table)
    console.print(f"[bold]Total:[/] {_format_currency(calculate_cost(sums, pricing))}")
    sys.exit(EXIT_CODE_PASS)


@app.command("cost-reset")
def cost_reset(
    yes: bool = typer.Option(False, "--yes", help="Confirm zeroing the ledger"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Cost ledger database path")
):
    """Zero the persisted cost ledger."""
    if not yes:
        console.print("[yellow]Refusing to reset without --yes[/]")
        sys.exit(EXIT_CODE_FAIL)
    repository = CostRepository(db_path)
    repository.initialize()
    removed = repository.reset()
    console.print(f"[green]✓[/] Cost ledger reset ({removed} events removed)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def storage(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config")
):
    """Show usage of the shared object store."""
    config = _load_config(config_path)
    quota = _quota_manager(config, _transport(config))
    try:
        usage = quota.usage()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    limit_mb = quota.hard_limit_bytes / (1024 * 1024)
    console.print(f"Storage: {usage.total_mb:.1f}MB / {limit_mb:.0f}MB ({usage.object_count} objects)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cleanup(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config")
):
    """Run one eviction pass against the storage quota."""
    config = _load_config(config_path)
    quota = _quota_manager(config, _transport(config))
    try:
        report = quota.before_upload(0)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"Evicted {len(report.evicted_keys)} objects, "
        f"{report.usage_before.total_mb:.1f}MB -> {report.usage_after.total_mb:.1f}MB"
    )
    if report.over_limit:
        console.print("[yellow]⚠ Still over the hard limit after eviction[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def templates(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config")
):
    """List templates stored in the shared object store."""
    config = _load_config(config_path)
    library = TemplateLibrary(_object_store(config, _transport(config)))
    try:
        records = library.load_records()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not records:
        console.print("[yellow]No templates stored[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Templates")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Refs", justify="right")
    table.add_column("Thumbnail")
    table.add_column("Prompt")
    for record in records.values():
        table.add_row(
            record.id,
            record.name,
            str(record.ref_count),
            "yes" if record.has_thumbnail else "",
            record.prompt,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("template-save")
def template_save(
    template_id: str = typer.Argument(..., help="Template id"),
    prompt: str = typer.Option(..., "--prompt", "-p", help="Background description"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    reference: Optional[List[Path]] = typer.Option(None, "--reference", "-r", exists=True, dir_okay=False,
                                                   help="Style reference image (repeatable)"),
    thumbnail: Optional[Path] = typer.Option(None, "--thumbnail", exists=True, dir_okay=False,
                                             help="Preview image"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config")
):
    """Create or replace a stored template."""
    references = reference or []
    if len(references) > MAX_REFERENCE_IMAGES:
        console.print(f"[red]Error:[/] at most {MAX_REFERENCE_IMAGES} reference images")
        sys.exit(EXIT_CODE_FAIL)

    config = _load_config(config_path)
    library = TemplateLibrary(_object_store(config, _transport(config)))
    try:
        records = library.load_records()
        previous = records.get(template_id)
        ref_count = library.save_reference_images(template_id, [_read_image(p) for p in references])
        if thumbnail:
            library.save_thumbnail(template_id, _read_image(thumbnail))
        records[template_id] = TemplateRecord(
            id=template_id,
            name=name or (previous.name if previous else template_id),
            prompt=prompt,
            description=previous.description if previous else "",
            ref_count=ref_count if references or previous is None else previous.ref_count,
            has_thumbnail=thumbnail is not None or bool(previous and previous.has_thumbnail),
            extra=previous.extra if previous else {},
        )
        library.save_records(list(records.values()))
    except Exception as e:
        console.print(f"[red]Error saving template:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Template {template_id} saved ({records[template_id].ref_count} reference images)")
    sys.exit(EXIT_CODE_PASS)


@app.command("template-delete")
def template_delete(
    template_id: str = typer.Argument(..., help="Template id"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline YAML config")
):
    """Delete a stored template and its images."""
    config = _load_config(config_path)
    library = TemplateLibrary(_object_store(config, _transport(config)))
    try:
        library.delete(template_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Template {template_id} deleted")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
