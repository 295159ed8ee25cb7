"""
Configuration management and loading.

Handles pipeline settings from YAML and credentials from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from genloop.core.pricing import PricingTable

GEMINI_KEY_ENV = "GEMINI_API_KEY"
SUPABASE_KEY_ENV = "SUPABASE_KEY"
SUPABASE_URL_ENV = "SUPABASE_URL"

VALID_IMAGE_SIZES = ("1K", "2K", "4K")
VALID_ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")


@dataclass(frozen=True)
class GenerationConfig:
    """External generation API settings."""
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-3-pro-image-preview"
    verifier_model: str = "gemini-2.0-flash"
    image_size: str = "4K"
    aspect_ratio: str = "1:1"

    def __post_init__(self):
        """Validate generation values."""
        if self.image_size not in VALID_IMAGE_SIZES:
            raise ValueError(f"image_size must be one of: {list(VALID_IMAGE_SIZES)}")
        if self.aspect_ratio not in VALID_ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of: {list(VALID_ASPECT_RATIOS)}")


@dataclass(frozen=True)
class RetryConfig:
    """Transport retry and generation attempt budgets."""
    max_http_attempts: int = 3
    base_delay_seconds: float = 3.0
    timeout_seconds: float = 120.0
    attempt_budget: int = 2

    def __post_init__(self):
        """Validate retry values."""
        if self.max_http_attempts < 1:
            raise ValueError("max_http_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.attempt_budget < 1:
            raise ValueError("attempt_budget must be >= 1")


@dataclass(frozen=True)
class QualityConfig:
    enabled: bool = True
    threshold: float = 8

    def __post_init__(self):
        if not 0 < self.threshold <= 10:
            raise ValueError("threshold must be in (0, 10]")


@dataclass(frozen=True)
class StorageConfig:
    """Shared object store and quota settings."""
    url: Optional[str] = None
    bucket: str = "photos"
    hard_limit_mb: float = 900
    target_fraction: float = 0.8
    protected_prefixes: Tuple[str, ...] = ("_templates/",)

    def __post_init__(self):
        """Validate quota values."""
        if self.hard_limit_mb <= 0:
            raise ValueError("hard_limit_mb must be > 0")
        if not 0 < self.target_fraction <= 1:
            raise ValueError("target_fraction must be in (0, 1]")

    @property
    def hard_limit_bytes(self) -> int:
        return int(self.hard_limit_mb * 1024 * 1024)


@dataclass(frozen=True)
class PricingConfig:
    """Unit prices in USD."""
    text_input_per_million: float = 2.00
    text_output_per_million: float = 12.00
    image: float = 0.134

    def __post_init__(self):
        for name in ("text_input_per_million", "text_output_per_million", "image"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    def to_table(self) -> PricingTable:
        return PricingTable.from_rates(
            self.text_input_per_million,
            self.text_output_per_million,
            self.image
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)


_SECTIONS = {
    'generation': (GenerationConfig, {
        'api_base': str, 'model': str, 'verifier_model': str,
        'image_size': str, 'aspect_ratio': str,
    }),
    'retry': (RetryConfig, {
        'max_http_attempts': int, 'base_delay_seconds': float,
        'timeout_seconds': float, 'attempt_budget': int,
    }),
    'quality': (QualityConfig, {'enabled': bool, 'threshold': float}),
    'storage': (StorageConfig, {
        'url': str, 'bucket': str, 'hard_limit_mb': float,
        'target_fraction': float, 'protected_prefixes': tuple,
    }),
    'pricing': (PricingConfig, {
        'text_input_per_million': float, 'text_output_per_million': float,
        'image': float,
    }),
}


def load_pipeline_config(path: Optional[str] = None) -> PipelineConfig:
    """Load and validate pipeline configuration from a YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    and wrongly typed values are rejected so misconfigurations are loud.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return PipelineConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return PipelineConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, (section_cls, schema) in _SECTIONS.items():
        data = raw_config.get(name)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = section_cls(**_parse_section(data, schema, name))

    return PipelineConfig(**sections)


def _parse_section(data: Dict[str, Any], schema: Dict[str, type], path: str) -> Dict[str, Any]:
    """Validate and coerce one configuration section.

    Args:
        data: Raw section data
        schema: Allowed keys and their expected types
        path: Section name for error messages

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = schema[key]
        where = f"'{key}' in {path}"
        if expected is bool:
            if not isinstance(value, bool):
                raise ValueError(f"{where} must be true or false")
            parsed[key] = value
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{where} must be an integer")
            parsed[key] = value
        elif expected is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{where} must be a number")
            parsed[key] = float(value)
        elif expected is tuple:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"{where} must be a list of strings")
            parsed[key] = tuple(value)
        else:
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{where} must be a non-empty string")
            parsed[key] = value
    return parsed


def gemini_api_key() -> Optional[str]:
    return os.environ.get(GEMINI_KEY_ENV) or None


def supabase_credentials(config: StorageConfig) -> Tuple[Optional[str], Optional[str]]:
    """Resolve the store URL (config first, then environment) and key."""
    url = config.url or os.environ.get(SUPABASE_URL_ENV) or None
    return url, os.environ.get(SUPABASE_KEY_ENV) or None
