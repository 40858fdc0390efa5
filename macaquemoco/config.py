#!/usr/bin/env python3
"""
Configuration loader for macaque EPI motion-distortion correction.

Handles:
- Loading YAML configuration files
- Merging study configs with defaults
- Environment variable substitution
- Configuration validation
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
import yaml


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required parameters."""
    pass


DEFAULT_CONFIG = Path(__file__).parent.parent / 'configs' / 'default.yaml'

BRAIN_EXTRACTION_METHODS = ('T1W', 'EPI')
RESTRICT_HEAD_MODES = (0, 1, 2)


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    file_path : Path
        Path to YAML file

    Returns
    -------
    dict
        Loaded configuration

    Raises
    ------
    ConfigurationError
        If file doesn't exist or YAML is invalid
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            config = yaml.safe_load(f)
        return config if config is not None else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict
        Base configuration (defaults)
    override : dict
        Override configuration (study-specific)

    Returns
    -------
    dict
        Merged configuration (override takes precedence)
    """
    merged = base.copy()

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def substitute_variables(config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Substitute environment variables and config references in strings.

    Supports:
    - ${ENV_VAR} - environment variables
    - ${config.key.subkey} - references to other config values

    Parameters
    ----------
    config : dict
        Configuration dictionary
    context : dict, optional
        Context for variable substitution (defaults to config itself)

    Returns
    -------
    dict
        Configuration with substituted values
    """
    pattern = re.compile(r'\$\{([^}]+)\}')

    def substitute_string(value: str, ctx: Dict[str, Any]) -> str:
        def replacer(match):
            var_path = match.group(1)

            if var_path in os.environ:
                return os.environ[var_path]

            try:
                val = ctx
                for part in var_path.split('.'):
                    val = val[part]
                return str(val)
            except (KeyError, TypeError):
                # Unresolved references are left in place
                return match.group(0)

        return pattern.sub(replacer, value)

    def process_value(value: Any, ctx: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return substitute_string(value, ctx)
        elif isinstance(value, dict):
            return {k: process_value(v, ctx) for k, v in value.items()}
        elif isinstance(value, list):
            return [process_value(item, ctx) for item in value]
        return value

    # Iterate to resolve chained references (A -> B -> C)
    result = config
    for _ in range(5):
        resolved = process_value(result, context if context is not None else result)
        if resolved == result:
            break
        result = resolved

    return result


def validate_config(config: Dict[str, Any], validate_workflows: bool = False) -> None:
    """
    Validate the motion-correction parameters.

    Parameters
    ----------
    config : dict
        Configuration to validate
    validate_workflows : bool
        Also check that every key the workflows read is present

    Raises
    ------
    ConfigurationError
        If a parameter is missing or out of range
    """
    if 'motion_correction' not in config:
        raise ConfigurationError("Missing required section: motion_correction")

    mc = config['motion_correction']

    quality = mc.get('quality', 2)
    if isinstance(quality, bool) or not isinstance(quality, int) or quality < 0:
        raise ConfigurationError(
            f"motion_correction.quality must be a non-negative integer, got {quality}"
        )

    perfect = mc.get('perfect_threshold')
    if perfect is not None:
        if not isinstance(perfect, (int, float)) or not -1.0 <= perfect <= 0.0:
            raise ConfigurationError(
                f"motion_correction.perfect_threshold must be within [-1, 0], got {perfect}"
            )

    restrict = mc.get('restrict_head', 1)
    if restrict not in RESTRICT_HEAD_MODES:
        raise ConfigurationError(
            f"motion_correction.restrict_head must be one of {RESTRICT_HEAD_MODES}, got {restrict}"
        )

    interleave = mc.get('interleave', 2)
    if not isinstance(interleave, int) or interleave < 1:
        raise ConfigurationError(
            f"motion_correction.interleave must be a positive integer, got {interleave}"
        )

    for key in ('liberal_fraction', 'strict_fraction'):
        fraction = get_config_value(mc, f'reference.{key}', 0.5)
        if not isinstance(fraction, (int, float)) or not 0.0 < fraction <= 1.0:
            raise ConfigurationError(
                f"motion_correction.reference.{key} must be within (0, 1], got {fraction}"
            )

    method = str(get_config_value(mc, 'brain_extraction.method', 'T1W')).upper()
    if method not in BRAIN_EXTRACTION_METHODS:
        raise ConfigurationError(
            f"motion_correction.brain_extraction.method must be one of "
            f"{BRAIN_EXTRACTION_METHODS}, got {method}"
        )

    chunk = get_config_value(mc, 'reassembly.merge_chunk_size', 1000)
    if not isinstance(chunk, int) or chunk < 2:
        raise ConfigurationError(
            f"motion_correction.reassembly.merge_chunk_size must be an integer >= 2, got {chunk}"
        )

    if 'ants' in config and 'num_threads' in config['ants']:
        num_threads = config['ants']['num_threads']
        if not isinstance(num_threads, int) or num_threads < 1:
            raise ConfigurationError(f"ants.num_threads must be positive integer, got {num_threads}")

    if validate_workflows:
        from macaquemoco.config_validator import ConfigValidationError, validate_all_workflows
        try:
            validate_all_workflows(config)
        except ConfigValidationError as e:
            raise ConfigurationError(str(e)) from e


def load_config(config_path: Optional[Path] = None, validate: bool = True) -> Dict[str, Any]:
    """
    Load and process configuration file.

    This is the main entry point for loading configs. It:
    1. Loads the study config (if given)
    2. Loads and merges default config
    3. Substitutes variables
    4. Validates the result

    Parameters
    ----------
    config_path : Path, optional
        Path to study-specific configuration file. If None, the packaged
        defaults are returned.
    validate : bool
        Whether to validate the configuration

    Returns
    -------
    dict
        Processed configuration

    Raises
    ------
    ConfigurationError
        If configuration is invalid
    """
    study_config = {}
    default_path = DEFAULT_CONFIG

    if config_path is not None:
        config_path = Path(config_path)
        study_config = load_yaml(config_path)
        # Prefer a default.yaml next to the study config
        if (config_path.parent / 'default.yaml').exists():
            default_path = config_path.parent / 'default.yaml'

    if default_path.exists():
        config = merge_configs(load_yaml(default_path), study_config)
    else:
        config = study_config

    config = substitute_variables(config)

    if validate:
        validate_config(config)

    return config


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a value from config using dot notation.

    Parameters
    ----------
    config : dict
        Configuration dictionary
    key_path : str
        Dot-separated path (e.g., 'motion_correction.reference.liberal_fraction')
    default : any
        Default value if key not found

    Returns
    -------
    any
        Value at key_path, or default if not found

    Examples
    --------
    >>> get_config_value(config, 'motion_correction.quality')
    2
    >>> get_config_value(config, 'missing.key', default=0.3)
    0.3
    """
    try:
        value = config
        for part in key_path.split('.'):
            value = value[part]
        return value
    except (KeyError, TypeError):
        return default
