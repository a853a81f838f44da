# =============================================================================
# Configuration Loading and Merging
# =============================================================================
# This module handles loading YAML config files and merging them with
# command-line overrides. Settings stay plain dictionaries; secrets come from
# the environment (optionally a .env file) with configs/secrets.yaml as a
# fallback.

import os
import yaml
from pathlib import Path

from dotenv import load_dotenv

from hybrid_rag.errors import ConfigurationError


# Environment variable -> secrets key. The first three must be present before
# the pipeline or the evaluation harness may start.
SECRET_ENV_VARS = {
    'OPENAI_API_KEY': 'openai_api_key',
    'QDRANT_URL': 'qdrant_url',
    'QDRANT_COLLECTION': 'qdrant_collection',
    'QDRANT_API_KEY': 'qdrant_api_key',
}

REQUIRED_SECRETS = ['OPENAI_API_KEY', 'QDRANT_URL', 'QDRANT_COLLECTION']


def get_project_root():
    """
    Get the root directory of the project.
    This is the folder containing main.py and the configs/ directory.

    Returns:
        Path: The project root directory
    """
    # Go up from hybrid_rag/ to the project root
    return Path(__file__).parent.parent


def load_yaml_file(file_path):
    """
    Load a YAML file and return its contents as a dictionary.

    Args:
        file_path: Path to the YAML file

    Returns:
        dict: The parsed YAML contents, or empty dict if file doesn't exist
    """
    path = Path(file_path)
    if not path.exists():
        return {}

    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def deep_merge(base, override):
    """
    Recursively merge two dictionaries.
    Values in 'override' take precedence over values in 'base'.

    Args:
        base: The base dictionary (default values)
        override: The override dictionary (custom values)

    Returns:
        dict: A new dictionary with merged values

    Example:
        base = {'a': 1, 'b': {'x': 10, 'y': 20}}
        override = {'b': {'x': 99}}
        result = {'a': 1, 'b': {'x': 99, 'y': 20}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(config_path=None, cli_overrides=None):
    """
    Load configuration from YAML files and merge with CLI overrides.

    The loading order is:
    1. configs/base.yaml (default values)
    2. Custom config file (if provided via --config)
    3. CLI overrides (highest priority)

    Args:
        config_path: Optional path to a custom config YAML file
        cli_overrides: Optional dict of CLI argument overrides

    Returns:
        dict: The merged configuration dictionary
    """
    project_root = get_project_root()

    base_config_path = project_root / 'configs' / 'base.yaml'
    config = load_yaml_file(base_config_path)

    if config_path:
        custom_config = load_yaml_file(config_path)
        config = deep_merge(config, custom_config)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    return config


def get_secrets(env_file=None):
    """
    Collect API keys and connection settings.

    Values from the environment win over configs/secrets.yaml. A .env file in
    the working directory (or the one given) is loaded first without
    overriding variables that are already set.

    Args:
        env_file: Optional path to a .env file

    Returns:
        dict: Secrets keyed by their snake_case name (e.g. 'openai_api_key').
              Missing values are None.
    """
    load_dotenv(env_file)

    secrets_path = get_project_root() / 'configs' / 'secrets.yaml'
    file_secrets = load_yaml_file(secrets_path)

    secrets = {}
    for env_name, key in SECRET_ENV_VARS.items():
        value = os.getenv(env_name) or file_secrets.get(key)
        secrets[key] = value or None

    return secrets


def require_secrets(secrets, required=None):
    """
    Fail fast when any required credential is missing.

    Every missing name is reported at once so the user can fix them together.

    Args:
        secrets: Dictionary returned by get_secrets()
        required: Environment variable names to check (default: REQUIRED_SECRETS)

    Returns:
        dict: The same secrets, for chaining

    Raises:
        ConfigurationError: If one or more values are missing
    """
    required = REQUIRED_SECRETS if required is None else required
    missing = [name for name in required if not secrets.get(SECRET_ENV_VARS[name])]

    if missing:
        raise ConfigurationError(missing)

    return secrets


def resolve_path(path_str):
    """
    Convert a relative path string to an absolute Path object.
    Relative paths are resolved from the project root.

    Args:
        path_str: A path string (can be relative or absolute)

    Returns:
        Path: An absolute Path object
    """
    path = Path(path_str)

    if path.is_absolute():
        return path

    return get_project_root() / path


# =============================================================================
# Helper function to print config for debugging
# =============================================================================
def print_config(config, indent=0):
    """
    Pretty-print a configuration dictionary.

    Args:
        config: The configuration dictionary to print
        indent: Current indentation level (used internally for recursion)
    """
    prefix = "  " * indent
    for key, value in config.items():
        if isinstance(value, dict):
            print(f"{prefix}{key}:")
            print_config(value, indent + 1)
        else:
            print(f"{prefix}{key}: {value}")
