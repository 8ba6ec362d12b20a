"""Tests for the batchledger CLI: commands, output and exit codes."""

import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from typer.testing import CliRunner

from batchledger import cli
from batchledger.cli import app
from batchledger.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
from batchledger.contracts.enums import JobStatus
from batchledger.core.events import EventBus
from batchledger.core.ledger import JobLedger, LedgerDB
from batchledger.engine import ExecutionEngine
from tests.fixtures.classifiers import ScriptedClassifier, malformed
from tests.fixtures.sources import item_text

# Stderr is combined with stdout by CliRunner.invoke()
runner = CliRunner()

SETTINGS_TEMPLATE = """\
name: cli-job
source:
  path: incidents.csv
  id_column: IncidentID
  text_columns:
    cme: NarrativeCME
    le: NarrativeLE
classifier:
  model: fake-model
checkpoint:
  interval: 4
ledger:
  url: {ledger_url}
"""

Installer = Callable[[ScriptedClassifier], ScriptedClassifier]


def _json_lines(output: str) -> list[Any]:
    """JSON documents printed to stdout; log lines are rendered for the console and skipped."""
    return [json.loads(line) for line in output.splitlines() if line.startswith(("{", "["))]


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers = []


@pytest.fixture
def install_classifier(monkeypatch: pytest.MonkeyPatch) -> Installer:
    """Make every CLI command build its engine around the given fake classifier."""

    def _install(classifier: ScriptedClassifier) -> ScriptedClassifier:
        def _build_engine(db: LedgerDB, *, output_format: str, prefix: str = "Run") -> ExecutionEngine:
            event_bus = EventBus()
            formatters = create_json_formatters() if output_format == "json" else create_console_formatters(prefix)
            subscribe_formatters(event_bus, formatters)
            return ExecutionEngine(db, classifier_factory=classifier.factory(), event_bus=event_bus, sleep=lambda _: None)

        monkeypatch.setattr(cli, "build_engine", _build_engine)
        return classifier

    return _install


@pytest.fixture
def classifier(install_classifier: Installer) -> ScriptedClassifier:
    return install_classifier(ScriptedClassifier())


@pytest.fixture
def ledger_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def settings_file(tmp_path: Path, source_csv: Callable[..., Path], ledger_url: str) -> Path:
    source_csv(10)
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS_TEMPLATE.format(ledger_url=ledger_url))
    return path


def _invoke(*args: str) -> Any:
    return runner.invoke(app, ["--no-dotenv", *args])


def _jobs(ledger_url: str) -> list[Any]:
    with LedgerDB.from_url(ledger_url) as db:
        return JobLedger(db).list_jobs()


class TestBasics:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "batchledger version" in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("validate", "load", "start", "resume", "status", "cancel", "jobs"):
            assert command in result.stdout


class TestValidate:
    def test_valid(self, settings_file: Path) -> None:
        result = _invoke("validate", "--settings", str(settings_file))

        assert result.exit_code == 0, result.output
        assert "Configuration valid" in result.output
        assert "cme=NarrativeCME" in result.output

    def test_show_config(self, settings_file: Path) -> None:
        result = _invoke("validate", "--settings", str(settings_file), "--show-config")

        assert result.exit_code == 0, result.output
        assert "model: fake-model" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = _invoke("validate", "--settings", str(tmp_path / "nope.yaml"))

        assert result.exit_code == 1
        assert "Settings file not found" in result.output

    def test_invalid_config(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("name: x\nsource:\n  path: a.csv\n  id_column: ID\n  text_columns: {}\nclassifier:\n  model: m\n")

        result = _invoke("validate", "--settings", str(path))

        assert result.exit_code == 1
        assert "failed validation" in result.output

    def test_unreadable_source(self, settings_file: Path, tmp_path: Path) -> None:
        (tmp_path / "incidents.csv").unlink()

        result = _invoke("validate", "--settings", str(settings_file))

        assert result.exit_code == 1
        assert "Cannot read source file" in result.output


class TestLoad:
    def test_load_then_reload(self, settings_file: Path, classifier: ScriptedClassifier) -> None:
        first = _invoke("load", "--settings", str(settings_file))
        second = _invoke("load", "--settings", str(settings_file))

        assert first.exit_code == 0, first.output
        assert "10 rows -> 20 items" in first.output
        assert second.exit_code == 0
        assert "already loaded" in second.output
        assert classifier.call_count == 0


class TestStart:
    def test_completes(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        result = _invoke("start", "--settings", str(settings_file))

        assert result.exit_code == 0, result.output
        assert "completed (20/20 items)" in result.output
        assert "Progress: 20/20" in result.output
        (job,) = _jobs(ledger_url)
        assert job.status == JobStatus.COMPLETED
        assert classifier.call_count == 20

    def test_json_output(self, settings_file: Path, classifier: ScriptedClassifier) -> None:
        result = _invoke("start", "--settings", str(settings_file), "--format", "json")

        assert result.exit_code == 0, result.output
        documents = _json_lines(result.stdout)
        assert [doc["completed"] for doc in documents if doc["event"] == "progress"] == [4, 8, 12, 16, 20]
        assert documents[-1]["event"] == "run_completed"
        assert documents[-1]["exit_code"] == 0

    def test_ledger_override(self, settings_file: Path, tmp_path: Path, classifier: ScriptedClassifier) -> None:
        other = f"sqlite:///{tmp_path / 'other.db'}"

        result = _invoke("start", "--settings", str(settings_file), "--ledger", other)

        assert result.exit_code == 0, result.output
        assert len(_jobs(other)) == 1

    def test_cancelled_exits_3(self, settings_file: Path, ledger_url: str, install_classifier: Installer) -> None:
        def cancel(number: int) -> None:
            if number == 2:
                with LedgerDB.from_url(ledger_url) as db:
                    ledger = JobLedger(db)
                    ledger.request_cancel(ledger.list_jobs()[0].job_id)

        install_classifier(ScriptedClassifier(hook=cancel))

        result = _invoke("start", "--settings", str(settings_file))

        assert result.exit_code == 3
        assert "cancelled at 4/20 items" in result.output
        assert _jobs(ledger_url)[0].status == JobStatus.CANCELLED

    def test_template_error_exits_1(self, settings_file: Path, install_classifier: Installer) -> None:
        from batchledger.classifier import TemplateError

        install_classifier(ScriptedClassifier(default=TemplateError("Undefined variable: Region")))

        result = _invoke("start", "--settings", str(settings_file))

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_unexpected_failure_exits_2(self, settings_file: Path, ledger_url: str, install_classifier: Installer) -> None:
        install_classifier(ScriptedClassifier(default=RuntimeError("boom")))

        result = _invoke("start", "--settings", str(settings_file))

        assert result.exit_code == 2
        assert "RuntimeError: boom" in result.output
        assert _jobs(ledger_url)[0].status == JobStatus.FAILED


class TestResume:
    def test_resume_cancelled_job(self, settings_file: Path, ledger_url: str, install_classifier: Installer) -> None:
        def cancel(number: int) -> None:
            if number == 1:
                with LedgerDB.from_url(ledger_url) as db:
                    ledger = JobLedger(db)
                    ledger.request_cancel(ledger.list_jobs()[0].job_id)

        install_classifier(ScriptedClassifier(hook=cancel))
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id
        classifier = install_classifier(ScriptedClassifier())

        result = _invoke("resume", job_id, "--ledger", ledger_url)

        assert result.exit_code == 0, result.output
        assert classifier.call_count == 16
        assert "Resume COMPLETED" in result.output

    def test_completed_job_is_noop(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id

        result = _invoke("resume", job_id, "--settings", str(settings_file))

        assert result.exit_code == 0
        assert "already completed" in result.output
        assert classifier.call_count == 20

    def test_retry_errors(self, settings_file: Path, ledger_url: str, install_classifier: Installer) -> None:
        install_classifier(ScriptedClassifier({item_text(4, "le"): malformed()}))
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id
        classifier = install_classifier(ScriptedClassifier())

        result = _invoke("resume", job_id, "--ledger", ledger_url, "--retry-errors")

        assert result.exit_code == 0, result.output
        assert classifier.calls == [item_text(4, "le")]
        assert _jobs(ledger_url)[0].retry_pass == 1

    def test_unknown_job_exits_1(self, ledger_url: str, classifier: ScriptedClassifier) -> None:
        result = _invoke("resume", "missing", "--ledger", ledger_url)

        assert result.exit_code == 1
        assert "missing" in result.output

    def test_changed_source_exits_1(self, settings_file: Path, tmp_path: Path, ledger_url: str, install_classifier: Installer) -> None:
        def cancel(number: int) -> None:
            if number == 1:
                with LedgerDB.from_url(ledger_url) as db:
                    ledger = JobLedger(db)
                    ledger.request_cancel(ledger.list_jobs()[0].job_id)

        install_classifier(ScriptedClassifier(hook=cancel))
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id
        with (tmp_path / "incidents.csv").open("a", encoding="utf-8") as f:
            f.write("id-9999,late row,late row\n")
        classifier = install_classifier(ScriptedClassifier())

        result = _invoke("resume", job_id, "--ledger", ledger_url)

        assert result.exit_code == 1
        assert "has changed since it was loaded" in result.output
        assert classifier.call_count == 0


class TestStatusAndJobs:
    def test_status_console(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id

        result = _invoke("status", job_id, "--ledger", ledger_url)

        assert result.exit_code == 0, result.output
        assert f"Job {job_id} (cli-job)" in result.output
        assert "Progress:  20/20 (100.0%)" in result.output

    def test_status_json(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id

        result = _invoke("status", job_id, "--ledger", ledger_url, "--format", "json")

        assert result.exit_code == 0, result.output
        (report,) = _json_lines(result.stdout)
        assert report["status"] == "completed"
        assert report["completed"] == report["total"] == 20
        assert report["lock"] is None

    def test_status_unknown_job(self, ledger_url: str, classifier: ScriptedClassifier) -> None:
        result = _invoke("status", "missing", "--ledger", ledger_url)

        assert result.exit_code == 1

    def test_cancel_completed_job(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))
        job_id = _jobs(ledger_url)[0].job_id

        result = _invoke("cancel", job_id, "--ledger", ledger_url)

        assert result.exit_code == 0
        assert "already completed" in result.output

    def test_jobs_json(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))

        result = _invoke("jobs", "--ledger", ledger_url, "--format", "json")

        assert result.exit_code == 0, result.output
        (jobs,) = _json_lines(result.stdout)
        assert [job["status"] for job in jobs] == ["completed"]
        assert jobs[0]["name"] == "cli-job"

    def test_jobs_status_filter(self, settings_file: Path, ledger_url: str, classifier: ScriptedClassifier) -> None:
        _invoke("start", "--settings", str(settings_file))

        result = _invoke("jobs", "--ledger", ledger_url, "--status", "failed")

        assert result.exit_code == 0
        assert "No jobs found." in result.output
