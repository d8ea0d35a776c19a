"""CLI entry point for importflow."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from importflow import __version__
from importflow.config.settings import ImporterConfig, load_config
from importflow.errors import ImporterError, QueueError, ValidationRuleError
from importflow.utils.logging import configure_logging, get_logger
from importflow.utils.result import ExitCode

SOURCE_TYPES = ["file", "disk", "url"]

# Exit code per runner outcome
OUTCOME_EXIT_CODES = {
    "completed": ExitCode.SUCCESS,
    "failed": ExitCode.IMPORT_FAILED,
    "needs_configuration": ExitCode.NEEDS_CONFIGURATION,
    "waiting": ExitCode.STILL_RUNNING,
    "max_steps": ExitCode.STILL_RUNNING,
    "timeout": ExitCode.STILL_RUNNING,
    "cancelled": ExitCode.STILL_RUNNING,
}


class Context:
    """CLI context for sharing state between commands."""

    def __init__(self, settings: ImporterConfig, log_level: str, log_format: str) -> None:
        self.settings = settings
        self.log_level = log_level
        self.log_format = log_format
        self.logger = get_logger("cli")
        self._services = None

    @property
    def services(self):
        """Lazily built service container."""
        if self._services is None:
            from importflow.processor.services import build_services

            self._services = build_services(self.settings)
        return self._services


pass_context = click.make_pass_decorator(Context)


def output_json(data: Any) -> None:
    """Output JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def fail_with(message: str, code: int = ExitCode.GENERAL_ERROR, **extra: Any) -> None:
    output_json({"status": "error", "message": message, **extra})
    sys.exit(code)


def parse_assignments(values: tuple[str, ...], option: str) -> dict[str, Any]:
    """Parse repeated ``KEY=VALUE`` options; values are read as YAML scalars."""
    parsed: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=option)
        try:
            parsed[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as e:
            raise click.BadParameter(f"cannot parse value for {key!r}: {e}", param_hint=option)
    return parsed


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to importflow.yaml (default: $IMPORTFLOW_CONFIG or ./importflow.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default=None,
    help="Logging level (overrides the config file)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    default=None,
    help="Log format (overrides the config file)",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """
    importflow - streaming data importer.

    Moves CSV and WordPress export files into per-import staging storage
    through a resumable, per-driver state machine.
    """
    result = load_config(config_path)
    if result.is_err():
        configure_logging(level=log_level or "info", format_type=log_format or "json")
        fail_with(f"Configuration error: {result.unwrap_err()}", ExitCode.CONFIG_ERROR)

    settings = result.unwrap()
    level = log_level or settings.logging.level
    fmt = log_format or settings.logging.format
    configure_logging(level=level, format_type=fmt)

    ctx.obj = Context(settings=settings, log_level=level, log_format=fmt)


@cli.command()
@click.argument("source")
@click.option(
    "--source-type",
    type=click.Choice(SOURCE_TYPES),
    default="file",
    help="How SOURCE is resolved",
)
@click.option("--driver", default="auto", help="Driver tag (default: detect from source)")
@click.option("--meta", "meta", multiple=True, help="Initial metadata KEY=VALUE (repeatable)")
@pass_context
def create(ctx: Context, source: str, source_type: str, driver: str, meta: tuple[str, ...]) -> None:
    """Create an import for SOURCE."""
    from importflow.drivers import get_driver

    metadata = parse_assignments(meta, "--meta")
    try:
        default_state = get_driver(driver).config().default_state
    except ImporterError as e:
        fail_with(str(e))

    record = ctx.services.records.create(
        driver=driver,
        source_type=source_type,
        source_detail=source,
        metadata=metadata,
        state=default_state,
    )
    output_json({"status": "success", "import": record.to_dict()})


@cli.command()
@click.argument("import_id")
@click.option("--headers", help="Comma-separated column names")
@click.option(
    "--headers-first-row/--no-headers-first-row",
    default=None,
    help="Whether the first CSV row holds the column names",
)
@click.option("--delimiter", help="Field delimiter ('tab' for tab)")
@click.option("--target-table", help="Staging table for CSV rows")
@click.option("--skip-invalid-rows/--fail-on-invalid-rows", default=None)
@click.option("--max-errors", type=int, help="Skipped rows tolerated before aborting")
@click.option("--rule", "rules", multiple=True, help="Validation rule COLUMN=RULES, e.g. email='required|email'")
@click.option("--meta", "meta", multiple=True, help="Extra metadata KEY=VALUE (repeatable)")
@pass_context
def configure(
    ctx: Context,
    import_id: str,
    headers: Optional[str],
    headers_first_row: Optional[bool],
    delimiter: Optional[str],
    target_table: Optional[str],
    skip_invalid_rows: Optional[bool],
    max_errors: Optional[int],
    rules: tuple[str, ...],
    meta: tuple[str, ...],
) -> None:
    """Set import options such as CSV headers and validation rules."""
    from importflow.parsers.validation import parse_rules

    updates = parse_assignments(meta, "--meta")
    if headers is not None:
        updates["headers"] = [h.strip() for h in headers.split(",")]
    if headers_first_row is not None:
        updates["headers_first_row"] = headers_first_row
    if delimiter is not None:
        updates["delimiter"] = delimiter
    if target_table is not None:
        updates["target_table"] = target_table
    if skip_invalid_rows is not None:
        updates["skip_invalid_rows"] = skip_invalid_rows
    if max_errors is not None:
        updates["max_errors"] = max_errors

    records = ctx.services.records
    try:
        record = records.get(import_id)
    except ImporterError as e:
        fail_with(str(e))

    if rules:
        validation_rules = dict(record.get_meta("validation_rules") or {})
        for item in rules:
            column, sep, spec = item.partition("=")
            if not sep or not column.strip():
                raise click.BadParameter(f"expected COLUMN=RULES, got {item!r}", param_hint="--rule")
            try:
                parse_rules(spec)
            except ValidationRuleError as e:
                raise click.BadParameter(str(e), param_hint="--rule")
            validation_rules[column.strip()] = spec
        updates["validation_rules"] = validation_rules

    record.update_metadata(updates)
    records.save(record)
    ctx.logger.info("import_configured", import_id=import_id, keys=sorted(updates))
    output_json({"status": "success", "import_id": import_id, "updated": updates})


@cli.command()
@click.argument("import_id")
@pass_context
def step(ctx: Context, import_id: str) -> None:
    """Execute the current state of an import once."""
    from importflow.processor.runner import StateMachineRunner

    try:
        result = StateMachineRunner(ctx.services).step(import_id)
    except ImporterError as e:
        fail_with(str(e))

    output_json({"status": "success" if result.ok else "failed", **result.to_dict()})
    if not result.ok:
        sys.exit(ExitCode.IMPORT_FAILED)
    if result.needs_configuration:
        sys.exit(ExitCode.NEEDS_CONFIGURATION)


@cli.command()
@click.argument("import_id")
@click.option("--max-steps", type=int, default=None, help="Stop after this many steps")
@click.option("--timeout", type=float, default=None, help="Stop after this many seconds")
@click.option("--poll-interval", type=float, default=None, help="Seconds between polls while waiting")
@pass_context
def run(
    ctx: Context,
    import_id: str,
    max_steps: Optional[int],
    timeout: Optional[float],
    poll_interval: Optional[float],
) -> None:
    """Drive an import until it completes, fails or needs input."""
    from importflow.processor.runner import StateMachineRunner

    runner = StateMachineRunner(
        ctx.services,
        poll_interval=poll_interval,
        max_steps=max_steps,
        timeout=timeout,
    )
    try:
        report = runner.run(import_id)
    except ImporterError as e:
        fail_with(str(e))

    output_json(report.to_dict())
    sys.exit(OUTCOME_EXIT_CODES.get(report.outcome, ExitCode.GENERAL_ERROR))


@cli.command()
@click.argument("import_id")
@pass_context
def status(ctx: Context, import_id: str) -> None:
    """Show an import record and its state machine."""
    from importflow.processor.runner import StateMachineRunner

    try:
        machine = StateMachineRunner(ctx.services).machine_for(import_id)
    except ImporterError as e:
        fail_with(str(e))

    output_json({"import": machine.record.to_dict(), "machine": machine.describe()})


@cli.command(name="list")
@click.option("--state", default=None, help="Only imports in this state")
@pass_context
def list_imports(ctx: Context, state: Optional[str]) -> None:
    """List imports."""
    records = ctx.services.records.list()
    if state:
        records = [r for r in records if r.state == state]
    output_json({
        "count": len(records),
        "imports": [
            {
                "id": r.id,
                "driver": r.driver,
                "state": r.state,
                "source": f"{r.source_type}:{r.source_detail}",
                "extraction_status": r.get_meta("extraction_status"),
                "updated_at": r.updated_at,
                "error_message": r.error_message,
            }
            for r in records
        ],
    })


@cli.command()
@pass_context
def drivers(ctx: Context) -> None:
    """List available drivers and their transition tables."""
    from importflow.drivers import get_driver, list_drivers

    output_json({"drivers": [get_driver(name).describe() for name in list_drivers()]})


@cli.command()
@click.option("--queue", "queues", multiple=True, help="Queue to consume (repeatable)")
@click.option("--once", is_flag=True, default=False, help="Process at most one job")
@click.option("--stop-when-empty", is_flag=True, default=False, help="Exit when no job is available")
@click.option("--max-jobs", type=int, default=None, help="Exit after this many jobs")
@click.option("--sleep", "sleep_seconds", type=float, default=3.0, help="Seconds to sleep when idle")
@pass_context
def worker(
    ctx: Context,
    queues: tuple[str, ...],
    once: bool,
    stop_when_empty: bool,
    max_jobs: Optional[int],
    sleep_seconds: float,
) -> None:
    """Consume extraction jobs from the database queue."""
    from importflow.queue.worker import QueueWorker

    backend = ctx.services.database_queue
    if backend is None:
        fail_with(
            f"Workers need the database queue driver (configured: {ctx.settings.queue.driver})",
            ExitCode.CONFIG_ERROR,
        )

    queue_names = list(queues) or [ctx.settings.queue.queue]
    try:
        stats = QueueWorker(
            backend,
            ctx.services,
            queue_names,
            sleep_seconds=sleep_seconds,
        ).work(once=once, stop_when_empty=stop_when_empty, max_jobs=max_jobs)
    except KeyboardInterrupt:
        ctx.logger.info("worker_interrupted")
        return
    except QueueError as e:
        fail_with(str(e))

    output_json({"status": "success", "queues": queue_names, **stats.to_dict()})


@cli.command(name="queue-status")
@click.option("--queue", "queues", multiple=True, help="Queue to check (repeatable)")
@click.option("--fresh", is_flag=True, default=False, help="Ignore cached worker checks")
@pass_context
def queue_status(ctx: Context, queues: tuple[str, ...], fresh: bool) -> None:
    """Report worker presence and backlog per queue."""
    settings = ctx.settings.queue
    queue_names = list(queues) or [settings.queue, settings.medium_queue, settings.heavy_queue]
    detector = ctx.services.detector
    if fresh:
        detector.clear_cache()

    report = detector.queue_status_report(queue_names)
    backend = ctx.services.database_queue
    if backend is not None:
        report["stats"] = {name: backend.queue_stats(name) for name in queue_names}
    output_json(report)


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except ImporterError as e:
        logger = get_logger("cli")
        logger.error("cli_error", error=str(e))
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()
