"""
Configuration schema and loading for batchledger jobs.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. The resolved settings
are frozen into the ledger when a job starts and re-validated from there on
every resume, so a job always runs under the configuration it began with.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Literal

from jinja2 import TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from batchledger.contracts.enums import SourceFormat
from batchledger.contracts.errors import ConfigSnapshotError
from batchledger.core.canonical import canonical_json, stable_hash

_FORMAT_BY_SUFFIX = {
    ".csv": SourceFormat.CSV,
    ".txt": SourceFormat.CSV,
    ".tsv": SourceFormat.CSV,
    ".xlsx": SourceFormat.XLSX,
    ".xlsm": SourceFormat.XLSX,
}


class SourceSettings(BaseModel):
    """Where the work items come from and how the file is shaped.

    The file is read in wide form: one id column plus one text column per
    item type. Each row fans out into one work item per item type.

    Example YAML:
        source:
          path: data/incidents.xlsx
          id_column: IncidentID
          text_columns:
            cme: NarrativeCME
            le: NarrativeLE
    """

    model_config = {"frozen": True}

    path: str = Field(description="Path to the CSV or XLSX file")
    name: str = Field(description="Logical source identity (defaults to the path)")
    format: SourceFormat = Field(description="File format (inferred from the suffix when omitted)")
    id_column: str = Field(description="Column holding the stable item id")
    text_columns: dict[str, str] = Field(description="item_type -> column holding that item's text")
    attribute_columns: list[str] = Field(default_factory=list, description="Columns copied onto every item")
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    encoding: str = Field(default="utf-8-sig")
    sheet: str | int = Field(default=0, description="XLSX sheet name or index")

    @model_validator(mode="before")
    @classmethod
    def _fill_name_and_format(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("path"):
            return data
        data = dict(data)
        if not data.get("name"):
            data["name"] = str(data["path"])
        if not data.get("format"):
            suffix = Path(str(data["path"])).suffix.lower()
            if suffix not in _FORMAT_BY_SUFFIX:
                raise ValueError(f"cannot infer source format from suffix {suffix!r}; set source.format")
            data["format"] = _FORMAT_BY_SUFFIX[suffix]
        return data

    @field_validator("text_columns")
    @classmethod
    def validate_text_columns(cls, v: dict[str, str]) -> dict[str, str]:
        if not v:
            raise ValueError("at least one text column is required")
        for item_type, column in v.items():
            if not item_type.strip() or not column.strip():
                raise ValueError("text_columns entries must be non-empty")
        return v


class ScopeSettings(BaseModel):
    """Which subset of the batch a job covers. Items are taken in key order."""

    model_config = {"frozen": True}

    max_items: int | None = Field(default=None, gt=0, description="Process at most this many items")
    item_types: list[str] | None = Field(default=None, min_length=1, description="Only these item types")


class ClassifierSettings(BaseModel):
    """The external classification call.

    The API key itself is never stored in settings; ``api_key_env`` names
    the environment variable holding it.
    """

    model_config = {"frozen": True}

    model: str = Field(description="Model name sent with every request")
    base_url: str | None = Field(default=None, description="OpenAI-compatible endpoint (None = api.openai.com)")
    api_key_env: str = Field(default="OPENAI_API_KEY")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None
    user_template: str = Field(default="{{ text }}", description="Jinja2 template rendered with text and item fields")
    response_format: Literal["text", "json_object"] = "text"
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-call timeout")
    required_fields: list[str] = Field(default_factory=lambda: ["detected"])
    confidence_field: str | None = "confidence"

    @field_validator("user_template")
    @classmethod
    def validate_user_template(cls, v: str) -> str:
        try:
            SandboxedEnvironment().parse(v)
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid user_template: {e}") from e
        return v


class CheckpointSettings(BaseModel):
    """How often progress is made durable.

    A crash loses at most ``interval`` classification calls; their items
    are simply processed again on resume.
    """

    model_config = {"frozen": True}

    interval: int = Field(default=100, gt=0, description="Items between checkpoints")
    max_attempts: int = Field(default=3, gt=0, description="Attempts to commit a checkpoint before failing the run")
    retry_delay_seconds: float = Field(default=1.0, ge=0)


class RetrySettings(BaseModel):
    """Retry behavior for transient classifier errors."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts per item")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    jitter_seconds: float = Field(default=1.0, ge=0, description="Random jitter added to each delay")


class LockSettings(BaseModel):
    model_config = {"frozen": True}

    stale_after_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Heartbeat age after which a lock whose owner cannot be probed is reclaimable",
    )


class ConcurrencySettings(BaseModel):
    model_config = {"frozen": True}

    max_workers: int = Field(default=1, gt=0, description="Parallel classification calls per checkpoint window")


class LedgerSettings(BaseModel):
    """Where durable state lives."""

    model_config = {"frozen": True}

    # str rather than Path: Path mangles PostgreSQL DSNs
    url: str = Field(default="sqlite:///./state/ledger.db", description="Full SQLAlchemy database URL")


class JobSettings(BaseModel):
    """Top-level configuration of one job.

    This is the single source of truth for a job. All settings are
    validated and frozen after construction.
    """

    model_config = {"frozen": True}

    name: str = Field(min_length=1, description="Human-readable job name")
    source: SourceSettings
    classifier: ClassifierSettings
    scope: ScopeSettings = Field(default_factory=ScopeSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)

    @model_validator(mode="after")
    def validate_scope_item_types(self) -> "JobSettings":
        if self.scope.item_types is not None:
            unknown = sorted(set(self.scope.item_types) - set(self.source.text_columns))
            if unknown:
                raise ValueError(f"scope.item_types not in source.text_columns: {unknown}")
        return self


# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _substitute_env(match: re.Match[str]) -> str:
    name, default = match.groups()
    value = os.environ.get(name, default)
    # Unset without a default stays literal so validation reports it
    return match.group(0) if value is None else value


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} and ${VAR:-default} in every string of a nested config."""
    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(_substitute_env, value)
    if isinstance(value, dict):
        return {key: _expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(item) for item in value]
    return value


class PromptFileError(Exception):
    """Error loading a prompt file referenced from settings."""


def _resolve_relative(path_value: str, settings_path: Path) -> Path:
    path = Path(path_value)
    if not path.is_absolute():
        path = (settings_path.parent / path).resolve()
    return path


def _expand_prompt_files(classifier: dict[str, Any], settings_path: Path) -> dict[str, Any]:
    """Replace user_template_file / system_prompt_file with the file contents.

    The content, not the path, is what ends up in the frozen job config.

    Raises:
        PromptFileError: If both inline and file forms are given or a file is missing
    """
    result = dict(classifier)
    for file_key, inline_key in (("user_template_file", "user_template"), ("system_prompt_file", "system_prompt")):
        if file_key not in result:
            continue
        if inline_key in result:
            raise PromptFileError(f"Cannot specify both '{inline_key}' and '{file_key}'")
        prompt_path = _resolve_relative(str(result.pop(file_key)), settings_path)
        if not prompt_path.exists():
            raise PromptFileError(f"Prompt file not found: {prompt_path}")
        result[inline_key] = prompt_path.read_text(encoding="utf-8")
    return result


def _read_layers(config_path: Path) -> dict[str, Any]:
    """Merge the YAML file with BATCHLEDGER_* environment overrides.

    Nested keys use a double underscore: BATCHLEDGER_LEDGER__URL.
    """
    from dynaconf import Dynaconf

    layered = Dynaconf(
        envvar_prefix="BATCHLEDGER",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )
    # Top-level keys come back uppercased, alongside Dynaconf's own switches
    return {key.lower(): value for key, value in layered.as_dict().items() if key not in _DYNACONF_KEYS}


_DYNACONF_KEYS = frozenset({"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"})


def load_settings(config_path: Path) -> JobSettings:
    """Load and validate a settings file.

    Precedence, highest first: BATCHLEDGER_* environment variables, the
    YAML file, then the Pydantic defaults. ``${VAR}`` references are
    expanded after merging. A relative source path is resolved against the
    settings file's directory so that resume works from any working
    directory; the source name defaults to the path as written.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
        PromptFileError: If a referenced prompt file is missing
    """
    # Dynaconf silently accepts missing files
    if not config_path.is_file():
        raise FileNotFoundError(f"Settings file not found: {config_path}")

    raw_config: dict[str, Any] = _expand_env_vars(_read_layers(config_path))

    source = raw_config.get("source")
    if isinstance(source, dict) and source.get("path"):
        written = str(source["path"])
        raw_config["source"] = {
            **source,
            "name": source.get("name") or written,
            "path": str(_resolve_relative(written, config_path)),
        }

    classifier = raw_config.get("classifier")
    if isinstance(classifier, dict):
        raw_config["classifier"] = _expand_prompt_files(classifier, config_path)

    return JobSettings(**raw_config)


def resolve_config(settings: JobSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict for the ledger.

    Includes all settings, explicit and defaulted. Contains no secrets:
    the classifier stores the name of its key variable, not the key.
    """
    return settings.model_dump(mode="json")


def config_snapshot(settings: JobSettings) -> tuple[str, str]:
    """Return (canonical JSON, hash) of the resolved settings."""
    resolved = resolve_config(settings)
    return canonical_json(resolved), stable_hash(resolved)


def settings_from_snapshot(config_json: str, config_hash: str) -> JobSettings:
    """Rebuild the settings a job was started with.

    Raises:
        ConfigSnapshotError: If the snapshot was altered or no longer validates
    """
    try:
        raw = json.loads(config_json)
    except json.JSONDecodeError as e:
        raise ConfigSnapshotError(f"Stored job config is not valid JSON: {e}") from e
    if stable_hash(raw) != config_hash:
        raise ConfigSnapshotError("Stored job config does not match its recorded hash")
    try:
        return JobSettings.model_validate(raw)
    except ValidationError as e:
        raise ConfigSnapshotError(f"Stored job config no longer validates: {e}") from e
