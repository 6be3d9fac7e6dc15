"""Row schemas for the business tables, keyed by their backend column names."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_CHANGES = frozenset(ChangeKind)


@dataclass(frozen=True)
class TableSpec:
    """A backend table and the column that scopes its rows to an owner."""
    name: str
    owner_column: str = "user_id"


SALES = TableSpec("Sales", owner_column="User_id")
INVENTORY = TableSpec("Inventory")
FINANCE = TableSpec("finance")
BILLS = TableSpec("bills")
PROFILES = TableSpec("profiles")


class _Row(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # NULL columns fall back to field defaults
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class SaleRow(_Row):
    id: Any = None
    product: str = Field(default="Unknown", alias="Product")
    amount: float = Field(default=0.0, alias="Amount")
    quantity: float = Field(default=0.0, alias="Quantity")
    sale_date: Optional[date] = Field(default=None, alias="Date")
    owner_id: Optional[str] = Field(default=None, alias="User_id")


class InventoryRow(_Row):
    id: Any = None
    item_name: str = Field(default="", alias="Item_name")
    stock_quantity: float = Field(default=0.0, alias="Stock quantity")
    price_per_unit: float = Field(default=0.0, alias="Price_per_unit")
    category: str = Field(default="Products", alias="Category")
    owner_id: Optional[str] = Field(default=None, alias="user_id")

    @property
    def stock_value(self) -> float:
        return self.stock_quantity * self.price_per_unit


class FinanceRow(_Row):
    id: Any = None
    type: str = "expense"  # income | expense
    amount: float = 0.0
    category: str = "Other"
    description: str = ""
    entry_date: Optional[date] = Field(default=None, alias="date")
    created_at: Optional[datetime] = None
    owner_id: Optional[str] = Field(default=None, alias="user_id")

    @property
    def effective_date(self) -> date | None:
        if self.entry_date is not None:
            return self.entry_date
        return self.created_at.date() if self.created_at else None


class BillRow(_Row):
    id: Any = None
    total_amount: float = 0.0
    paid_amount: float = 0.0
    status: str = "unpaid"  # paid | unpaid | partial
    owner_id: Optional[str] = Field(default=None, alias="user_id")

    @property
    def outstanding(self) -> float:
        return self.total_amount - self.paid_amount


class Profile(_Row):
    full_name: Optional[str] = None
    shop_name: Optional[str] = None
    shop_category: Optional[str] = None
    shop_address: Optional[str] = None
    shop_phone: Optional[str] = None
    shop_email: Optional[str] = None


def parse_rows(model: type[_Row], rows: list[dict[str, Any]]) -> list[Any]:
    return [model.model_validate(r) for r in rows]
