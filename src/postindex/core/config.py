"""Configuration models and loaders for :mod:`postindex`."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping

import tomllib
import tomlkit
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from postindex.core.paths import DEFAULT_WORKSPACE_NAME, WorkspacePaths
from postindex.errors import ConfigurationError
from postindex.resources import get_resource

# BigQuery table references may carry hyphenated project IDs.
_TABLE_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
_COLUMN_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LOG_LEVELS = frozenset(
    {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}
)

PipelineMode = Literal["combined", "per-entity"]
ConcurrencyValue = int | Literal["auto"]


def _validate_pattern(value: str, pattern: re.Pattern[str], label: str) -> str:
    if not pattern.fullmatch(value):
        raise ValueError(f"{label} {value!r} is not a valid identifier.")
    return value


class WarehouseSettings(BaseModel):
    """Connection and schema settings for the analytical warehouse."""

    project: str | None = Field(
        default=None,
        description="Warehouse (GCP) project identifier used for billing.",
    )
    credentials: SecretStr | None = Field(
        default=None,
        description="Service-account credential payload as a JSON string.",
    )
    location: str | None = Field(
        default=None,
        description="Optional dataset location (for example ``US``).",
    )
    publication_table: str = Field(
        default="lens-public-data.v2_polygon.publication_record",
        description="Table holding publication records.",
    )
    metadata_table: str = Field(
        default="lens-public-data.v2_polygon.publication_metadata",
        description="Table holding publication content and timestamps.",
    )
    follower_table: str = Field(
        default="lens-public-data.v2_polygon.global_stats_profile_follower",
        description="Table holding per-profile follower counts.",
    )
    follower_count_column: str = Field(
        default="total_followers",
        description="Follower-count column within ``follower_table``.",
    )
    timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Seconds allowed per warehouse call, retries included.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("publication_table", "metadata_table", "follower_table")
    @classmethod
    def _validate_table(cls, value: str) -> str:
        return _validate_pattern(value, _TABLE_PATTERN, "Table")

    @field_validator("follower_count_column")
    @classmethod
    def _validate_column(cls, value: str) -> str:
        return _validate_pattern(value, _COLUMN_PATTERN, "Column")

    def credentials_info(self) -> dict[str, Any]:
        """Return the parsed credential payload.

        Raises:
            ConfigurationError: If the payload is absent or not a JSON object.
        """

        if self.credentials is None:
            raise ConfigurationError(
                "Warehouse credentials are not configured.",
                missing=("warehouse.credentials",),
            )
        try:
            payload = json.loads(self.credentials.get_secret_value())
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"Warehouse credentials are not valid JSON: {exc.msg}",
            ) from exc
        if not isinstance(payload, dict):
            raise ConfigurationError(
                "Warehouse credentials must be a JSON object.",
            )
        return payload


class StoreSettings(BaseModel):
    """Vector store (PostgreSQL + pgvector) settings."""

    url: str | None = Field(
        default=None,
        description="PostgreSQL connection URL of the vector store.",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="Vector store API key, sent as the database password.",
    )
    collection: str = Field(
        default="documents",
        description="Table (collection) that receives indexed documents.",
    )
    dimension: int = Field(
        default=1536,
        ge=1,
        description="Embedding dimension of the collection's vector column.",
    )
    connect_timeout: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait when opening a store connection.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("collection")
    @classmethod
    def _validate_collection(cls, value: str) -> str:
        return _validate_pattern(value, _COLUMN_PATTERN, "Collection")


class EmbeddingSettings(BaseModel):
    """Embedding provider selection and credentials."""

    provider: str = Field(
        default="openai",
        description="Registered embedding provider key.",
    )
    model: str = Field(
        default="text-embedding-ada-002",
        description="Embedding model requested from the provider.",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="Embedding provider API key.",
    )
    timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Per-request timeout in seconds (provider default when unset).",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    def provider_config(self) -> dict[str, object]:
        """Return the mapping handed to provider factories."""

        payload: dict[str, object] = {}
        if self.api_key is not None:
            payload["api_key"] = self.api_key.get_secret_value()
        if self.timeout is not None:
            payload["timeout"] = self.timeout
        return payload


class PipelineSettings(BaseModel):
    """Pipeline tuning and entity selection."""

    batch_size: int = Field(
        default=100,
        ge=1,
        description="Maximum documents embedded and written per store call.",
    )
    min_content_length: int = Field(
        default=70,
        ge=0,
        description="Records must have content strictly longer than this.",
    )
    mode: PipelineMode = Field(
        default="combined",
        description="Run all entities together or one run per entity.",
    )
    max_concurrency: ConcurrencyValue = Field(
        default="auto",
        description="Worker count for per-entity mode (integer or 'auto').",
    )
    entities: dict[str, str] = Field(
        default_factory=dict,
        description="Entity IDs to index mapped to display names for logs.",
    )
    min_followers: int | None = Field(
        default=None,
        ge=0,
        description="Also index profiles with at least this many followers.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("max_concurrency")
    @classmethod
    def _validate_max_concurrency(
        cls,
        value: ConcurrencyValue,
    ) -> ConcurrencyValue:
        if isinstance(value, str):
            if value.strip().lower() != "auto":
                raise ValueError(
                    "max_concurrency must be a positive integer or 'auto'."
                )
            return "auto"
        if value < 1:
            raise ValueError("max_concurrency must be >= 1.")
        return value


class AppConfig(BaseModel):
    """Root configuration for the :mod:`postindex` application."""

    workspace: Path = Field(
        default_factory=lambda: Path.home() / DEFAULT_WORKSPACE_NAME,
        description="Workspace root holding config and logs.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    warehouse: WarehouseSettings = Field(default_factory=WarehouseSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {value!r}")
        return normalized

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        """Normalize fields after validation."""

        object.__setattr__(self, "workspace", self.workspace.expanduser())
        return self

    @property
    def display_names(self) -> Mapping[str, str]:
        """Return the optional entity display-name lookup."""

        return self.pipeline.entities

    def missing_runtime_settings(self) -> tuple[str, ...]:
        """Return dotted names of required settings that are unset."""

        required: dict[str, object] = {
            "warehouse.project": self.warehouse.project,
            "warehouse.credentials": self.warehouse.credentials,
            "store.url": self.store.url,
            "store.api_key": self.store.api_key,
            "embedding.api_key": self.embedding.api_key,
        }
        missing: list[str] = []
        for name, value in required.items():
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return tuple(missing)

    def require_runtime(self) -> None:
        """Validate every setting needed before a run performs I/O.

        Raises:
            ConfigurationError: If a required value is missing or invalid.
        """

        missing = self.missing_runtime_settings()
        if missing:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(missing),
                missing=missing,
            )
        self.warehouse.credentials_info()


DEFAULTS_RESOURCE_NAME = "postindex.defaults.toml"

# Each setting lists its environment names in priority order.
ENVIRONMENT_VARIABLES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("log_level",), ("POSTINDEX_LOG_LEVEL",)),
    (
        ("warehouse", "project"),
        ("POSTINDEX_WAREHOUSE_PROJECT", "GCP_PROJECT_ID"),
    ),
    (
        ("warehouse", "credentials"),
        ("POSTINDEX_WAREHOUSE_CREDENTIALS", "GCP_KEYFILE"),
    ),
    (("store", "url"), ("POSTINDEX_STORE_URL",)),
    (("store", "api_key"), ("POSTINDEX_STORE_API_KEY",)),
    (("store", "collection"), ("POSTINDEX_COLLECTION",)),
    (("embedding", "api_key"), ("OPENAI_API_KEY",)),
    (("pipeline", "batch_size"), ("POSTINDEX_BATCH_SIZE",)),
    (("pipeline", "min_content_length"), ("POSTINDEX_MIN_CONTENT_LENGTH",)),
)


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content.

    Example:
        >>> read_packaged_defaults_text().startswith("#")
        True
    """

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["log_level"]
        'INFO'
    """

    return tomllib.loads(read_packaged_defaults_text())


def env_config_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate environment variables into a nested config layer.

    Example:
        >>> env_config_from_environ({"POSTINDEX_BATCH_SIZE": "25"})
        {'pipeline': {'batch_size': '25'}}
    """

    layer: dict[str, Any] = {}
    for path, names in ENVIRONMENT_VARIABLES:
        value = next(
            (environ[name] for name in names if environ.get(name)),
            None,
        )
        if value is None:
            continue
        target = layer
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for issue in error.errors():
        location = ".".join(str(item) for item in issue["loc"]) or "config"
        parts.append(f"{location}: {issue['msg']}")
    return "; ".join(parts)


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed workspace ``postindex.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.

    Raises:
        ConfigurationError: If the merged settings fail validation.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    try:
        return AppConfig.model_validate(stack)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration: {_format_validation_error(exc)}"
        ) from exc


def read_user_config(path: Path) -> dict[str, Any]:
    """Parse the workspace config file, returning ``{}`` when absent.

    Raises:
        ConfigurationError: If the file exists but is not valid TOML.
    """

    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse {path}: {exc}") from exc


def load_workspace_config(
    paths: WorkspacePaths,
    *,
    environ: Mapping[str, str],
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load config for ``paths`` applying defaults, file, env, and CLI."""

    overrides = _deep_merge(
        {"workspace": str(paths.workspace)},
        cli_overrides or {},
    )
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=read_user_config(paths.config_file),
        env_config=env_config_from_environ(environ),
        cli_overrides=overrides,
    )


def _secret_comment(variables: Iterable[str]) -> tomlkit.items.Comment:
    return tomlkit.comment("set via " + " or ".join(variables))


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``postindex.toml`` template for users to customize.

    Secrets are never written; the template points at their environment
    variables instead.
    """

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by postindex init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > postindex.toml > defaults"
            )
        )
        document.add(tomlkit.nl())

    document["workspace"] = str(config.workspace)
    document["log_level"] = config.log_level

    warehouse = tomlkit.table()
    if config.warehouse.project:
        warehouse["project"] = config.warehouse.project
    else:
        warehouse.add(
            _secret_comment(("POSTINDEX_WAREHOUSE_PROJECT", "GCP_PROJECT_ID"))
        )
    warehouse.add(
        _secret_comment(("POSTINDEX_WAREHOUSE_CREDENTIALS", "GCP_KEYFILE"))
    )
    if config.warehouse.location:
        warehouse["location"] = config.warehouse.location
    warehouse["publication_table"] = config.warehouse.publication_table
    warehouse["metadata_table"] = config.warehouse.metadata_table
    warehouse["follower_table"] = config.warehouse.follower_table
    warehouse["follower_count_column"] = config.warehouse.follower_count_column
    warehouse["timeout"] = config.warehouse.timeout
    document["warehouse"] = warehouse

    store = tomlkit.table()
    if config.store.url:
        store["url"] = config.store.url
    else:
        store.add(_secret_comment(("POSTINDEX_STORE_URL",)))
    store.add(_secret_comment(("POSTINDEX_STORE_API_KEY",)))
    store["collection"] = config.store.collection
    store["dimension"] = config.store.dimension
    store["connect_timeout"] = config.store.connect_timeout
    document["store"] = store

    embedding = tomlkit.table()
    embedding["provider"] = config.embedding.provider
    embedding["model"] = config.embedding.model
    embedding.add(_secret_comment(("OPENAI_API_KEY",)))
    if config.embedding.timeout is not None:
        embedding["timeout"] = config.embedding.timeout
    document["embedding"] = embedding

    pipeline = tomlkit.table()
    pipeline["batch_size"] = config.pipeline.batch_size
    pipeline["min_content_length"] = config.pipeline.min_content_length
    pipeline["mode"] = config.pipeline.mode
    pipeline["max_concurrency"] = config.pipeline.max_concurrency
    if config.pipeline.min_followers is not None:
        pipeline["min_followers"] = config.pipeline.min_followers
    entities = tomlkit.table()
    for entity_id, name in config.pipeline.entities.items():
        entities[entity_id] = name
    if include_defaults and not config.pipeline.entities:
        entities.add(tomlkit.comment('"0x05" = "stani"'))
    pipeline["entities"] = entities
    document["pipeline"] = pipeline

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "ConcurrencyValue",
    "DEFAULTS_RESOURCE_NAME",
    "ENVIRONMENT_VARIABLES",
    "EmbeddingSettings",
    "PipelineMode",
    "PipelineSettings",
    "StoreSettings",
    "WarehouseSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_workspace_config",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]
