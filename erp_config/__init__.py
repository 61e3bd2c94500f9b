"""
erp_config -- single public entrypoint for posting configuration.

Responsibility:
    Provides the one way to obtain configuration at runtime,
    ``get_active_config()``, which returns a frozen ``PostingConfig``
    (account bindings, posting policies and the default chart).

Architecture position:
    Configuration -- sits above ``erp_kernel`` and below ``erp_services``.
    The kernel never imports from ``erp_config``; services receive the
    compiled config by injection.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- schema validation failures, naming the key.
"""

from __future__ import annotations

from pathlib import Path

from erp_config.loader import load_yaml_file, parse_config
from erp_config.schema import (
    AccountBindings,
    ChartAccountDef,
    PostingConfig,
    PostingPolicy,
)
from erp_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | None = None) -> PostingConfig:
    """
    Load, validate and return a posting configuration.

    Args:
        config_path: YAML file to load.  Defaults to erp_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If validation fails.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    config = parse_config(load_yaml_file(path))
    _logger.info(
        "erp_config_loaded",
        extra={
            "config_id": config.config_id,
            "version": config.version,
            "checksum": config.checksum,
            "negative_stock": config.policy.negative_stock.value,
            "chart_size": len(config.chart),
        },
    )
    return config


__all__ = [
    "AccountBindings",
    "ChartAccountDef",
    "PostingConfig",
    "PostingPolicy",
    "get_active_config",
]
