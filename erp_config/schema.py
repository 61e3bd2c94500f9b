"""
Posting configuration schema.

Frozen dataclasses the loader parses YAML into.  A PostingConfig is built
once and injected into the services that need it; nothing reads YAML at
posting time.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from erp_kernel.domain.costing import NegativeStockPolicy
from erp_kernel.models.account import AccountType

# ---------------------------------------------------------------------------
# Account bindings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountBindings:
    """Account codes the posting orchestrator resolves its roles to."""

    cash: str
    bank: str
    accounts_receivable: str
    accounts_payable: str
    inventory: str  # default when an item's category names none
    wip: str
    sales_revenue: str
    sales_returns: str  # contra-income debited by sales returns
    cogs: str  # default when an item's category names none
    stock_gain: str
    stock_write_off: str

    def codes(self) -> dict[str, str]:
        return {
            "cash": self.cash,
            "bank": self.bank,
            "accounts_receivable": self.accounts_receivable,
            "accounts_payable": self.accounts_payable,
            "inventory": self.inventory,
            "wip": self.wip,
            "sales_revenue": self.sales_revenue,
            "sales_returns": self.sales_returns,
            "cogs": self.cogs,
            "stock_gain": self.stock_gain,
            "stock_write_off": self.stock_write_off,
        }


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PostingPolicy:
    negative_stock: NegativeStockPolicy = NegativeStockPolicy.ALLOW
    validate_account_codes: bool = True
    lock_timeout_seconds: float = 10.0
    # ConcurrencyConflictError retries of a confirmation after the first try.
    confirmation_retries: int = 1


# ---------------------------------------------------------------------------
# Chart of accounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChartAccountDef:
    code: str
    name: str
    account_type: AccountType


@dataclass(frozen=True)
class PostingConfig:
    """The runtime configuration artifact."""

    config_id: str
    version: int
    bindings: AccountBindings
    policy: PostingPolicy = field(default_factory=PostingPolicy)
    chart: tuple[ChartAccountDef, ...] = ()
    checksum: str = ""
