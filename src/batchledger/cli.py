"""batchledger Command Line Interface.

Entry point for the batchledger CLI tool.

Exit codes:
    0  success, or nothing to do
    1  configuration, integrity or lock contention error
    2  run failed
    3  interrupted or cancelled (the job can be resumed)
"""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from batchledger import __version__
from batchledger.classifier.templates import TemplateError
from batchledger.cli_formatters import format_status, status_as_dict
from batchledger.cli_helpers import build_engine, describe_source, open_ledger
from batchledger.contracts.enums import JobStatus
from batchledger.contracts.errors import (
    BatchLedgerError,
    CheckpointError,
    LedgerIntegrityError,
    LockContentionError,
    LockLostError,
)
from batchledger.contracts.results import RunResult
from batchledger.core.config import JobSettings, PromptFileError, load_settings, resolve_config
from batchledger.core.ledger import LedgerDB
from batchledger.sources.loader import read_source_bytes

__all__ = [
    "app",
]

app = typer.Typer(
    name="batchledger",
    help="batchledger: resumable, checksummed batch classification.",
    no_args_is_help=True,
)

OutputFormat = Literal["console", "json"]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"batchledger version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None) -> bool:
    """Populate os.environ from a .env file before settings are read.

    Existing environment variables win over the file. Without ``env_file``
    python-dotenv searches upward from the working directory.

    Raises:
        typer.Exit: If an explicit env_file does not exist
    """
    from dotenv import find_dotenv, load_dotenv

    if env_file is None:
        return load_dotenv(find_dotenv(usecwd=True), override=False)
    if not env_file.is_file():
        typer.secho(f"Error: --env-file {env_file} does not exist", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return load_dotenv(env_file, override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Do not read a .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Read this .env file instead of searching for one."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log one JSON object per line on stderr."),
) -> None:
    """batchledger: resumable, checksummed batch classification."""
    from batchledger.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if no_dotenv:
        if env_file is not None:
            typer.secho("Warning: --no-dotenv set, ignoring --env-file", fg=typer.colors.YELLOW, err=True)
        return
    _load_dotenv(env_file)


def _format_validation_error(
    title: str,
    message: str,
    hint: str | None = None,
    details: list[str] | None = None,
) -> None:
    """Print a red panel on stderr: message, then detail bullets, then a hint."""
    from rich.console import Console, Group
    from rich.panel import Panel
    from rich.text import Text

    parts: list[Text] = [Text(message)]
    if details:
        parts.append(Text("\n".join(f"  • {detail}" for detail in details), style="dim"))
    if hint:
        parts.append(Text.assemble(("Hint: ", "bold yellow"), (hint, "yellow")))

    Console(stderr=True).print(
        Panel(Group(*parts), title=f"[bold red]{title}[/]", border_style="red", padding=(0, 1)),
    )


def _load_settings_or_exit(settings: str) -> JobSettings:
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {settings_path.name}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except PromptFileError as e:
        _format_validation_error(title="Prompt File Error", message=str(e))
        raise typer.Exit(1) from None
    except ValidationError as e:
        details = [f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()]
        _format_validation_error(
            title="Configuration Error",
            message=f"{settings_path.name} failed validation",
            details=details,
        )
        raise typer.Exit(1) from None


def _open_ledger_or_exit(ledger: str | None, config: JobSettings | None) -> LedgerDB:
    try:
        return open_ledger(ledger, config)
    except LedgerIntegrityError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _run_or_exit(operation: Callable[[], RunResult]) -> RunResult:
    """Run an engine operation, mapping failures onto exit codes."""
    try:
        return operation()
    except LockContentionError as e:
        typer.echo(f"Error: {e}", err=True)
        typer.echo("Hint: wait for the other process, or pass --force-unlock if it is on another host and gone.", err=True)
        raise typer.Exit(1) from None
    except (CheckpointError, LockLostError) as e:
        typer.echo(f"Run failed: {e}", err=True)
        raise typer.Exit(2) from None
    except BatchLedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except (TemplateError, ValueError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        typer.echo("Aborted. The job can be resumed.", err=True)
        raise typer.Exit(3) from None
    except Exception as e:
        typer.echo(f"Run failed: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(2) from None


def _finish(result: RunResult, output_format: OutputFormat) -> None:
    """Report a run's outcome and exit with its code."""
    if result.noop:
        if output_format == "json":
            typer.echo(json.dumps({"event": "noop", "job_id": result.job_id, "message": result.message}))
        else:
            typer.echo(result.message)
        raise typer.Exit(0)
    if result.interrupted or result.cancelled:
        if output_format == "console":
            reason = "cancelled" if result.cancelled else "interrupted"
            typer.echo(f"Job {result.job_id} {reason} at {result.completed}/{result.total} items.")
            if result.interrupted:
                typer.echo(f"Resume with: batchledger resume {result.job_id}")
        raise typer.Exit(3)
    if output_format == "console":
        typer.echo(f"Job {result.job_id}: {result.status.value} ({result.completed}/{result.total} items)")


_SETTINGS_OPTION = typer.Option(..., "--settings", "-s", help="Path to settings YAML file.")
_LEDGER_HELP = "Ledger database URL (default: from --settings, else sqlite:///./state/ledger.db)."


@app.command()
def validate(
    settings: str = _SETTINGS_OPTION,
    show_config: bool = typer.Option(
        False,
        "--show-config",
        help="Print the resolved configuration that a job would freeze.",
    ),
) -> None:
    """Validate configuration and check the source file is readable."""
    config = _load_settings_or_exit(settings)
    try:
        read_source_bytes(config.source.path)
    except BatchLedgerError as e:
        _format_validation_error(title="Source Error", message=str(e))
        raise typer.Exit(1) from None

    typer.echo("✓ Configuration valid")
    for line in describe_source(config):
        typer.echo(f"  {line}")
    if show_config:
        import yaml

        typer.echo(yaml.dump(resolve_config(config), default_flow_style=False, sort_keys=False))


@app.command()
def load(
    settings: str = _SETTINGS_OPTION,
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
) -> None:
    """Load the configured source into the work catalog without starting a job."""
    config = _load_settings_or_exit(settings)
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format="console")
        try:
            loaded = engine.load(config)
        except BatchLedgerError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    batch = loaded.batch
    if loaded.already_loaded:
        typer.echo(f"Source {batch.source_name} already loaded as batch {batch.batch_id} ({batch.item_count:,} items)")
        return
    typer.echo(
        f"Loaded {batch.source_name} as batch {batch.batch_id}: "
        f"{loaded.rows_read:,} rows -> {batch.item_count:,} items "
        f"({loaded.skipped_blank:,} blank skipped, {loaded.duplicates_dropped:,} duplicates dropped)"
    )


@app.command()
def start(
    settings: str = _SETTINGS_OPTION,
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
    output_format: OutputFormat = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Load the source (if needed), create a job and run it."""
    config = _load_settings_or_exit(settings)
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format=output_format)
        result = _run_or_exit(lambda: engine.start(config))
    _finish(result, output_format)


@app.command()
def resume(
    job_id: str = typer.Argument(..., help="Job to resume."),
    settings: str | None = typer.Option(None, "--settings", "-s", help="Settings file naming the ledger."),
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
    retry_errors: bool = typer.Option(
        False,
        "--retry-errors",
        help="Reprocess only items whose current result is an error.",
    ),
    force_unlock: bool = typer.Option(
        False,
        "--force-unlock",
        help="Take over a lock whose holder cannot be probed (e.g. another host).",
    ),
    output_format: OutputFormat = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """Resume a job from its last checkpoint using its frozen configuration."""
    config = _load_settings_or_exit(settings) if settings else None
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format=output_format, prefix="Resume")
        result = _run_or_exit(lambda: engine.resume(job_id, retry_errors=retry_errors, force_unlock=force_unlock))
    _finish(result, output_format)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job to report on."),
    settings: str | None = typer.Option(None, "--settings", "-s", help="Settings file naming the ledger."),
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
    output_format: OutputFormat = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """Show a job's status, progress, error count, ETA and lock holder."""
    config = _load_settings_or_exit(settings) if settings else None
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format=output_format)
        try:
            report = engine.status(job_id)
        except BatchLedgerError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    if output_format == "json":
        typer.echo(json.dumps(status_as_dict(report)))
    else:
        typer.echo(format_status(report))


@app.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job to cancel."),
    settings: str | None = typer.Option(None, "--settings", "-s", help="Settings file naming the ledger."),
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
) -> None:
    """Request cancellation; the running process stops at its next checkpoint."""
    config = _load_settings_or_exit(settings) if settings else None
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format="console")
        try:
            job = engine.cancel(job_id)
        except BatchLedgerError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    if job.status.is_terminal:
        typer.echo(f"Job {job_id} is already {job.status.value}; nothing to cancel")
    else:
        typer.echo(f"Cancellation requested for job {job_id}")


@app.command("jobs")
def list_jobs(
    settings: str | None = typer.Option(None, "--settings", "-s", help="Settings file naming the ledger."),
    ledger: str | None = typer.Option(None, "--ledger", "-l", help=_LEDGER_HELP, envvar="BATCHLEDGER_LEDGER_URL"),
    status_filter: JobStatus | None = typer.Option(None, "--status", help="Only jobs with this status."),
    output_format: OutputFormat = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """List jobs in the ledger, newest first."""
    config = _load_settings_or_exit(settings) if settings else None
    with _open_ledger_or_exit(ledger, config) as db:
        engine = build_engine(db, output_format=output_format)
        jobs = engine.list_jobs(status=status_filter)

    if output_format == "json":
        typer.echo(
            json.dumps(
                [
                    {
                        "job_id": job.job_id,
                        "name": job.name,
                        "status": job.status.value,
                        "completed": job.completed_item_count,
                        "total": job.total_item_count,
                        "errors": job.error_item_count,
                        "created_at": job.created_at.isoformat(),
                    }
                    for job in jobs
                ]
            )
        )
        return

    if not jobs:
        typer.echo("No jobs found.")
        return

    from rich.console import Console
    from rich.table import Table

    table = Table(title="Jobs")
    table.add_column("Job ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Created")
    for job in jobs:
        table.add_row(
            job.job_id,
            job.name,
            job.status.value,
            f"{job.completed_item_count:,}/{job.total_item_count:,}",
            f"{job.error_item_count:,}",
            job.created_at.isoformat(timespec="seconds"),
        )
    Console().print(table)


if __name__ == "__main__":
    app()
