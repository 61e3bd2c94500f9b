"""
Configuration loader (``erp_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the frozen dataclasses of
``erp_config.schema``.  The public runtime entry point is
``erp_config.get_active_config()``.

Invariants enforced
-------------------
* Every parse error raises ``ValueError`` naming the offending key; there
  are no silent defaults for required fields.
* Unknown policy values (e.g. ``negative_stock: maybe``) are rejected.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from erp_config.schema import (
    AccountBindings,
    ChartAccountDef,
    PostingConfig,
    PostingPolicy,
)
from erp_kernel.domain.costing import NegativeStockPolicy
from erp_kernel.models.account import AccountType

_BINDING_KEYS = (
    "cash",
    "bank",
    "accounts_receivable",
    "accounts_payable",
    "inventory",
    "wip",
    "sales_revenue",
    "sales_returns",
    "cogs",
    "stock_gain",
    "stock_write_off",
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _account_code(value: Any, key: str) -> str:
    # YAML reads an unquoted 1001 as int
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValueError(f"{key}: account code must be a string of digits, got {value!r}")
    code = str(value).strip()
    if not code.isdigit():
        raise ValueError(f"{key}: account code must be a string of digits, got {value!r}")
    return code


def parse_bindings(data: dict[str, Any]) -> AccountBindings:
    missing = [key for key in _BINDING_KEYS if key not in data]
    if missing:
        raise ValueError(f"bindings: missing key(s) {missing}")
    unknown = sorted(set(data) - set(_BINDING_KEYS))
    if unknown:
        raise ValueError(f"bindings: unknown key(s) {unknown}")
    return AccountBindings(
        **{key: _account_code(data[key], f"bindings.{key}") for key in _BINDING_KEYS}
    )


def parse_policy(data: dict[str, Any] | None) -> PostingPolicy:
    """Parse the ``policy`` section; every key is optional."""
    data = data or {}
    defaults = PostingPolicy()
    unknown = sorted(
        set(data)
        - {"negative_stock", "validate_account_codes", "lock_timeout_seconds", "confirmation_retries"}
    )
    if unknown:
        raise ValueError(f"policy: unknown key(s) {unknown}")

    raw_negative = data.get("negative_stock", defaults.negative_stock.value)
    try:
        negative_stock = NegativeStockPolicy(raw_negative)
    except ValueError as exc:
        raise ValueError(
            f"policy.negative_stock: expected one of "
            f"{[p.value for p in NegativeStockPolicy]}, got {raw_negative!r}"
        ) from exc

    validate_codes = data.get("validate_account_codes", defaults.validate_account_codes)
    if not isinstance(validate_codes, bool):
        raise ValueError(
            f"policy.validate_account_codes: expected a boolean, got {validate_codes!r}"
        )

    timeout = data.get("lock_timeout_seconds", defaults.lock_timeout_seconds)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(
            f"policy.lock_timeout_seconds: expected a positive number, got {timeout!r}"
        )

    retries = data.get("confirmation_retries", defaults.confirmation_retries)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ValueError(
            f"policy.confirmation_retries: expected a non-negative integer, got {retries!r}"
        )

    return PostingPolicy(
        negative_stock=negative_stock,
        validate_account_codes=validate_codes,
        lock_timeout_seconds=float(timeout),
        confirmation_retries=retries,
    )


def parse_chart_account(data: dict[str, Any]) -> ChartAccountDef:
    code = _account_code(data["code"], "chart.code")
    try:
        account_type = AccountType(data["type"])
    except ValueError as exc:
        raise ValueError(f"chart.{code}.type: unknown account type {data['type']!r}") from exc
    return ChartAccountDef(code=code, name=str(data["name"]), account_type=account_type)


def parse_config(data: dict[str, Any]) -> PostingConfig:
    """
    Parse a full configuration set.

    Raises:
        ValueError: on any missing or invalid value.
    """
    for key in ("config_id", "bindings"):
        if key not in data:
            raise ValueError(f"configuration: missing required key {key!r}")

    chart = tuple(parse_chart_account(entry) for entry in data.get("chart") or ())
    codes = [entry.code for entry in chart]
    duplicates = sorted({code for code in codes if codes.count(code) > 1})
    if duplicates:
        raise ValueError(f"chart: duplicate account code(s) {duplicates}")

    bindings = parse_bindings(data["bindings"])
    if chart:
        unbound = sorted(
            f"{role}={code}" for role, code in bindings.codes().items() if code not in codes
        )
        if unbound:
            raise ValueError(f"bindings: code(s) not in chart {unbound}")

    return PostingConfig(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        bindings=bindings,
        policy=parse_policy(data.get("policy")),
        chart=chart,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
