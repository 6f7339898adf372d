import json
import os
import re
from pathlib import Path
from typing import Annotated, Any

import structlog
from annotated_types import Ge, Gt, Le
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_pascal

from .aligner.alignment import DEFAULT_PLACEHOLDER, PlaceholderPolicy
from .aligner.embedders import LiteLLM, Ollama, OpenAI
from .aligner.embeddings import RetryPolicy
from .aligner.preprocessing import DEFAULT_SPECIAL_CHARACTERS, NormalizeOptions

logger = structlog.get_logger()

CONFIG_ENV_VAR = "LANGALIGN_CONFIG"


class ConfigurationError(Exception):
    """
    Raised when the configuration is invalid or cannot be read. Raised before
    any content is processed.
    """


class _Section(BaseModel):
    # accept both the PascalCase keys of appsettings.json and field names
    model_config = ConfigDict(
        alias_generator=to_pascal, populate_by_name=True, extra="ignore"
    )


class AlignmentSettings(_Section):
    """
    Attributes:
        similarity_threshold: Minimum cosine similarity for a pair to be
            accepted.
        max_embedding_batch_size: Texts per embedding request.
        max_concurrent_requests: Embedding requests in flight at once.
        min_content_length: Shorter normalized content is not embedded.
        max_content_length: Longer normalized content is not embedded.
        demo_row_limit: Only process the first n rows of each file, 0 for all.
    """

    similarity_threshold: Annotated[float, Ge(0.0), Le(1.0)] = 0.35
    max_embedding_batch_size: Annotated[int, Gt(0), Le(2048)] = 50
    max_concurrent_requests: Annotated[int, Gt(0), Le(64)] = 5
    min_content_length: Annotated[int, Ge(0)] = 3
    max_content_length: Annotated[int, Gt(0)] = 8000
    demo_row_limit: Annotated[int, Ge(0)] = 0

    @model_validator(mode="after")
    def check_length_bounds(self) -> "AlignmentSettings":
        if self.max_content_length <= self.min_content_length:
            raise ValueError(
                f"MaxContentLength ({self.max_content_length}) must be greater "
                f"than MinContentLength ({self.min_content_length})"
            )
        return self


class PreprocessingSettings(_Section):
    strip_markup: bool = Field(
        default=True,
        validation_alias=AliasChoices("StripMarkup", "StripHtmlTags", "strip_markup"),
    )
    normalize_whitespace: bool = True
    remove_special_characters: bool = True
    special_characters: str = DEFAULT_SPECIAL_CHARACTERS

    @field_validator("special_characters")
    @classmethod
    def check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"not a valid regular expression: {e}") from e
        return value

    def normalize_options(self) -> NormalizeOptions:
        return NormalizeOptions(
            strip_markup=self.strip_markup,
            normalize_whitespace=self.normalize_whitespace,
            remove_special_characters=self.remove_special_characters,
            special_characters=self.special_characters,
        )


class OutputSettings(_Section):
    show_detailed_results: bool = True
    show_progress_messages: bool = True
    export_unmatched_as_placeholder: bool = True
    placeholder_template: str = DEFAULT_PLACEHOLDER
    include_orphaned_targets: bool = False
    line_by_line_report: bool = False

    @field_validator("placeholder_template")
    @classmethod
    def check_template(cls, value: str) -> str:
        # only {reference_id} and {reference_content} can be filled in
        try:
            value.format(reference_id="", reference_content="")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                "placeholder template may only use {reference_id} and "
                f"{{reference_content}}: {type(e).__name__}: {e}"
            ) from e
        return value

    def placeholder_policy(self) -> PlaceholderPolicy:
        return PlaceholderPolicy(
            export_unmatched_as_placeholder=self.export_unmatched_as_placeholder,
            template=self.placeholder_template,
        )


class RetrySettings(_Section):
    max_retries: Annotated[int, Ge(0), Le(10)] = 3
    retry_base_delay: Annotated[float, Ge(0.0)] = 1.0
    retry_max_delay: Annotated[float, Ge(0.0)] = 30.0
    request_timeout: Annotated[float, Gt(0.0)] = 60.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            request_timeout=self.request_timeout,
        )


class AppConfiguration(_Section):
    """
    Top level configuration, shaped like the `appsettings.json` of the
    desktop tool: `LanguageComparison`, `Preprocessing`, `Output`, plus
    `Retry` and `Embedding`.
    """

    language_comparison: AlignmentSettings = Field(default_factory=AlignmentSettings)
    preprocessing: PreprocessingSettings = Field(
        default_factory=PreprocessingSettings
    )
    output: OutputSettings = Field(default_factory=OutputSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    embedding: OpenAI | Ollama | LiteLLM = Field(
        default_factory=lambda: OpenAI(implementation="openai"),
        discriminator="implementation",
    )


def apply_overrides(
    config: AppConfiguration, overrides: dict[str, dict[str, Any]]
) -> AppConfiguration:
    """
    Returns a copy of `config` with per section overrides applied, e.g.
    `{"language_comparison": {"similarity_threshold": 0.5}}`. Overrides use
    field names and are validated like file values.

    Raises:
        ConfigurationError: on an unknown section or an invalid value.
    """
    update: dict[str, BaseModel] = {}
    for section_name, values in overrides.items():
        if not values:
            continue
        section = getattr(config, section_name, None)
        if not isinstance(section, BaseModel):
            raise ConfigurationError(f"unknown configuration section: {section_name}")
        try:
            update[section_name] = type(section).model_validate(
                {**section.model_dump(), **values}
            )
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
    return config.model_copy(update=update)


def load_configuration(
    path: str | Path | None = None,
    overrides: dict[str, dict[str, Any]] | None = None,
) -> AppConfiguration:
    """
    Loads the configuration from a JSON file (or the file named by
    LANGALIGN_CONFIG) and applies `overrides` on top of it. Without a file the
    defaults are used.

    Raises:
        ConfigurationError: if the file cannot be read or a value is invalid.
    """
    if path is None and os.getenv(CONFIG_ENV_VAR):
        path = os.environ[CONFIG_ENV_VAR]

    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"configuration file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"configuration file {path} is not valid JSON: {e}"
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"configuration file {path} must hold an object")
        logger.debug("configuration loaded", path=str(path))

    try:
        config = AppConfiguration.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e

    if overrides:
        config = apply_overrides(config, overrides)
    return config
