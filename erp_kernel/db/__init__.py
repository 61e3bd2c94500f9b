"""Database layer - engine, base classes, types, and immutability guards."""

from erp_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from erp_kernel.db.engine import create_tables, get_engine, get_session, get_session_factory
from erp_kernel.db.types import ExactDecimal, round_cost, round_money, round_quantity

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUID",
    "UUIDString",
    "ExactDecimal",
    "round_money",
    "round_cost",
    "round_quantity",
]
