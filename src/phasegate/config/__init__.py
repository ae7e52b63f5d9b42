"""Configuration: defaults, validation, profiles and layered loading."""

from phasegate.config.loader import ConfigLoadError, dump_effective_config, load_config
from phasegate.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    PhasegateConfig,
    assert_valid_config,
    default_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "DEFAULT_CONFIG",
    "PhasegateConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
]
