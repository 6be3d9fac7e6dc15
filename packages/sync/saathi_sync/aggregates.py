"""
Business aggregates computed from an owner's rows.

Pure functions shared by the dashboard panels, the insight orchestrator and
the chat handler. Nothing here touches the network.
"""

from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable

from .models import BillRow, FinanceRow, InventoryRow, SaleRow

LOW_STOCK_THRESHOLD = 10
LOW_AVERAGE_ORDER = 200
TOP_PRODUCTS = 5


def format_inr(amount: float) -> str:
    """Format rupees with Indian digit grouping, e.g. 1234567.5 -> ₹12,34,567.50."""
    sign = "-" if amount < 0 else ""
    amount = abs(round(amount, 2))
    whole, frac = divmod(round(amount * 100), 100)
    digits = str(int(whole))
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups + [tail])
    text = f"{sign}₹{digits}"
    if frac:
        text += f".{int(frac):02d}"
    return text


def months_back(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def period_start(period: str, today: date) -> date:
    if period == "week":
        return today - timedelta(days=7)
    if period == "quarter":
        return months_back(today, 3)
    if period == "year":
        return months_back(today, 12)
    return months_back(today, 1)


# --- Panel summaries ---

@dataclass
class SalesSummary:
    count: int = 0
    total: float = 0.0
    today_total: float = 0.0


def summarize_sales(sales: Iterable[SaleRow], today: date) -> SalesSummary:
    summary = SalesSummary()
    for sale in sales:
        summary.count += 1
        summary.total += sale.amount
        if sale.sale_date == today:
            summary.today_total += sale.amount
    return summary


@dataclass
class InventorySummary:
    item_count: int = 0
    total_value: float = 0.0
    low_stock: list[InventoryRow] = field(default_factory=list)
    categories: dict[str, int] = field(default_factory=dict)


def summarize_inventory(
    items: Iterable[InventoryRow],
    threshold: int = LOW_STOCK_THRESHOLD,
) -> InventorySummary:
    summary = InventorySummary()
    categories: dict[str, int] = defaultdict(int)
    for item in items:
        summary.item_count += 1
        summary.total_value += item.stock_value
        categories[item.category] += 1
        if item.stock_quantity < threshold:
            summary.low_stock.append(item)
    summary.categories = dict(categories)
    return summary


@dataclass
class FinanceSummary:
    income: float = 0.0
    expenses: float = 0.0
    expense_categories: dict[str, float] = field(default_factory=dict)

    @property
    def net_profit(self) -> float:
        return self.income - self.expenses

    def expense_share(self, category: str) -> float:
        """Percentage of total expenses spent in a category."""
        if not self.expenses:
            return 0.0
        return self.expense_categories.get(category, 0.0) / self.expenses * 100


def summarize_finance(entries: Iterable[FinanceRow], since: date | None = None) -> FinanceSummary:
    summary = FinanceSummary()
    categories: dict[str, float] = defaultdict(float)
    for entry in entries:
        if since is not None:
            day = entry.effective_date
            if day is None or day < since:
                continue
        if entry.type == "income":
            summary.income += entry.amount
        elif entry.type == "expense":
            summary.expenses += entry.amount
            categories[entry.category] += entry.amount
    summary.expense_categories = dict(categories)
    return summary


# --- Chat context snapshot ---

@dataclass
class SalesFigures:
    count: int = 0
    revenue: float = 0.0

    def add(self, sale: SaleRow) -> None:
        self.count += 1
        self.revenue += sale.amount


@dataclass
class ProductSales:
    name: str
    quantity: float = 0.0
    revenue: float = 0.0


@dataclass
class BusinessSnapshot:
    today: SalesFigures
    yesterday: SalesFigures
    month: SalesFigures
    total: SalesFigures
    month_finance: FinanceSummary
    inventory: InventorySummary
    pending_bills: int
    pending_amount: float
    top_products: list[ProductSales]

    @property
    def month_profit(self) -> float:
        return self.month_finance.income + self.month.revenue - self.month_finance.expenses


def build_business_snapshot(
    sales: list[SaleRow],
    inventory: list[InventoryRow],
    finance: list[FinanceRow],
    bills: list[BillRow],
    today: date,
    low_stock_threshold: int = LOW_STOCK_THRESHOLD,
) -> BusinessSnapshot:
    yesterday = today - timedelta(days=1)
    start_of_month = today.replace(day=1)

    figures = {name: SalesFigures() for name in ("today", "yesterday", "month", "total")}
    products: dict[str, ProductSales] = {}
    for sale in sales:
        figures["total"].add(sale)
        if sale.sale_date == today:
            figures["today"].add(sale)
        if sale.sale_date == yesterday:
            figures["yesterday"].add(sale)
        if sale.sale_date is not None and sale.sale_date >= start_of_month:
            figures["month"].add(sale)
        product = products.setdefault(sale.product or "Unknown", ProductSales(sale.product or "Unknown"))
        product.quantity += sale.quantity
        product.revenue += sale.amount

    pending = [b for b in bills if b.status in ("unpaid", "partial")]
    top = sorted(products.values(), key=lambda p: p.revenue, reverse=True)[:TOP_PRODUCTS]

    return BusinessSnapshot(
        today=figures["today"],
        yesterday=figures["yesterday"],
        month=figures["month"],
        total=figures["total"],
        month_finance=summarize_finance(finance, since=start_of_month),
        inventory=summarize_inventory(inventory, low_stock_threshold),
        pending_bills=len(pending),
        pending_amount=sum(b.outstanding for b in pending),
        top_products=top,
    )


# --- Rule-based insights ---

def generate_business_insights(
    sales: list[SaleRow],
    products: list[InventoryRow],
    finance: list[FinanceRow],
    period: str,
    low_stock_threshold: int = LOW_STOCK_THRESHOLD,
) -> list[dict[str, Any]]:
    """Metric cards plus recommendations for the given window of rows."""
    insights: list[dict[str, Any]] = []

    ordered = sorted(sales, key=lambda s: s.sale_date or date.min)
    amounts = [s.amount for s in ordered]
    total_revenue = sum(amounts)

    # Growth: second half of the window against the first half
    midpoint = len(amounts) // 2
    first_half = sum(amounts[:midpoint])
    second_half = sum(amounts[midpoint:])
    growth = (second_half - first_half) / first_half * 100 if first_half > 0 else 0.0

    insights.append({
        "type": "revenue",
        "title": "Revenue Overview",
        "value": total_revenue,
        "change": growth,
        "trend": "up" if growth > 0 else "down",
        "description": (
            f"Total revenue of {format_inr(total_revenue)} with "
            f"{growth:.1f}% {'growth' if growth > 0 else 'decline'}"
        ),
    })

    low_stock = [p for p in products if p.stock_quantity < low_stock_threshold]
    if low_stock:
        insights.append({
            "type": "alert",
            "title": "Low Stock Warning",
            "severity": "high",
            "count": len(low_stock),
            "items": [p.item_name for p in low_stock],
            "description": f"{len(low_stock)} products are running low on stock",
        })

    average_order = total_revenue / len(amounts) if amounts else 0.0
    insights.append({
        "type": "trend",
        "title": "Sales Trend",
        "period": period,
        "totalSales": len(amounts),
        "averageOrder": average_order,
        "description": f"{len(amounts)} sales with average order value of {format_inr(average_order)}",
    })

    money = summarize_finance(finance)
    insights.append({
        "type": "finance",
        "title": "Profitability Snapshot",
        "value": money.net_profit,
        "description": (
            f"Income {format_inr(money.income)} - Expenses {format_inr(money.expenses)} "
            f"= Net {format_inr(money.net_profit)}"
        ),
    })

    top_value = sorted(products, key=lambda p: p.stock_value, reverse=True)[:3]
    if top_value:
        insights.append({
            "type": "inventory",
            "title": "High-Value Inventory Focus",
            "items": [{"name": p.item_name, "value": p.stock_value} for p in top_value],
            "description": "Items contributing most to inventory value.",
        })

    suggestions = []
    if growth < 0:
        suggestions.append("Run a 10% weekday discount to recover declining growth.")
    if low_stock:
        suggestions.append(
            f"Restock {min(len(low_stock), 3)} low-stock items today to prevent lost sales."
        )
    if money.net_profit < 0:
        suggestions.append("Reduce non-essential expenses or increase pricing on low-margin items.")
    if average_order < LOW_AVERAGE_ORDER:
        suggestions.append("Offer bundles or free add-ons above ₹500 to lift average order value.")
    if suggestions:
        insights.append({
            "type": "recommendation",
            "title": "AI Recommendations",
            "suggestions": suggestions,
        })

    return insights
