"""
Conversational query handling for the shop assistant.

Classifies a free-text (often Hinglish) message into an intent, pulls the
owner's full dataset into a context block when the intent needs numbers, and
forwards both to the Completion Service.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

import structlog

from .aggregates import BusinessSnapshot, build_business_snapshot, format_inr
from .completion import CompletionClient
from .models import (
    BILLS,
    FINANCE,
    INVENTORY,
    PROFILES,
    SALES,
    BillRow,
    FinanceRow,
    InventoryRow,
    Profile,
    SaleRow,
    parse_rows,
)
from .rest import RestClient

log = structlog.get_logger()


class QueryType(str, Enum):
    SALE_ADD = "sale_add"
    OVERVIEW = "overview"
    QUERY = "query"
    CHAT = "chat"


SALE_ADD_PATTERNS = ("sale add", "add sale", "nayi sale", "new sale", "bech diya", "bikri", "sell")
OVERVIEW_PATTERNS = ("overview", "mahine ka", "monthly", "report", "summary", "performance", "overall")
QUERY_PATTERNS = (
    "kitni", "kitna", "total", "sale", "stock", "inventory", "revenue", "profit",
    "pending", "payment", "customer", "product", "item", "expense", "income",
    "aaj", "kal", "today", "yesterday", "week", "month", "year",
    "top", "best", "worst", "low", "high", "average", "count", "number",
    "balance", "due", "amount", "price", "cost", "margin", "loss",
    "bill", "invoice", "transaction", "order", "baki", "udhar",
)


def detect_query_type(message: str) -> QueryType:
    text = message.lower()
    if any(p in text for p in SALE_ADD_PATTERNS):
        return QueryType.SALE_ADD
    if any(p in text for p in OVERVIEW_PATTERNS):
        return QueryType.OVERVIEW
    if any(p in text for p in QUERY_PATTERNS):
        return QueryType.QUERY
    return QueryType.CHAT


_FORMAT_RULES = {
    QueryType.OVERVIEW: """

RESPONSE FORMAT FOR OVERVIEW:
Provide a comprehensive business overview using the real data above. Structure it as:
1. Today's Snapshot
2. This Month's Performance
3. Inventory Health
4. Financial Summary
5. Alerts & Recommendations

Keep it professional and actionable.""",
    QueryType.QUERY: """

RESPONSE FORMAT FOR QUERIES:
- Answer the specific question using ONLY the real data provided
- Be precise with numbers
- Add relevant context if helpful
- Suggest related insights when appropriate""",
    QueryType.SALE_ADD: """

RESPONSE FOR SALE ADD REQUESTS:
Currently, sales must be added through the Sales Management section in the app.
Guide the user to:
1. Go to Dashboard
2. Navigate to Sales section
3. Click "Add Sale" button
4. Fill in the product, quantity, and amount details

The app will automatically update inventory and generate invoice.""",
}


def build_system_prompt(profile: Profile | None, business_type: str | None, query_type: QueryType) -> str:
    profile = profile or Profile()
    user_name = profile.full_name or "User"
    shop_name = profile.shop_name or "Your Shop"
    category = profile.shop_category or business_type or "General"
    first_name = (user_name.split() or ["User"])[0]

    lines = [
        "You are VyapaarSaathiAI - a fully database-connected business assistant for shop owners.",
        "",
        "USER PROFILE:",
        f"- Owner Name: {user_name}",
        f"- Shop Name: {shop_name}",
        f"- Business Category: {category}",
    ]
    if profile.shop_address:
        lines.append(f"- Address: {profile.shop_address}")
    if profile.shop_phone:
        lines.append(f"- Contact: {profile.shop_phone}")
    if profile.shop_email:
        lines.append(f"- Email: {profile.shop_email}")
    lines += [
        "",
        "Your personality:",
        "- Friendly, helpful, and professional",
        f"- Address the user by their name ({first_name}) to make it personal",
        "- Speak in a mix of Hindi and English (Hinglish) when appropriate",
        "- Keep answers concise but informative",
        f"- Reference the shop name ({shop_name}) when discussing their business",
        "",
        "CRITICAL RULES:",
        "- NEVER guess or fabricate data",
        "- ALWAYS use the real data provided in the context",
        "- Format numbers in Indian style (e.g., ₹1,00,000)",
        "- If data is unavailable, clearly state that",
        f"- Provide advice tailored to {category} business type",
    ]
    return "\n".join(lines) + _FORMAT_RULES.get(query_type, "")


def format_context(snapshot: BusinessSnapshot) -> str:
    inv = snapshot.inventory
    low_stock = ", ".join(
        f"{item.item_name} ({item.stock_quantity:g} left)" for item in inv.low_stock
    ) or "None"
    top = "\n".join(
        f"{i}. {p.name} - {format_inr(p.revenue)} ({p.quantity:g} units)"
        for i, p in enumerate(snapshot.top_products, start=1)
    ) or "No sales yet"
    money = snapshot.month_finance

    return f"""

REAL BUSINESS DATA (use this for your response):
TODAY'S PERFORMANCE:
- Sales Count: {snapshot.today.count}
- Revenue: {format_inr(snapshot.today.revenue)}

YESTERDAY:
- Sales Count: {snapshot.yesterday.count}
- Revenue: {format_inr(snapshot.yesterday.revenue)}

THIS MONTH:
- Total Sales: {snapshot.month.count}
- Total Revenue: {format_inr(snapshot.month.revenue)}
- Income: {format_inr(money.income)}
- Expenses: {format_inr(money.expenses)}
- Net Profit: {format_inr(snapshot.month_profit)}

INVENTORY STATUS:
- Total Items: {inv.item_count}
- Total Value: {format_inr(inv.total_value)}
- Low Stock Items ({len(inv.low_stock)}): {low_stock}

PENDING BILLS:
- Count: {snapshot.pending_bills}
- Amount: {format_inr(snapshot.pending_amount)}

TOP SELLING PRODUCTS:
{top}

ALL TIME:
- Total Sales: {snapshot.total.count}
- Total Revenue: {format_inr(snapshot.total.revenue)}"""


@dataclass
class ChatReply:
    message: str
    query_type: QueryType
    has_data: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "queryType": self.query_type.value,
            "hasData": self.has_data,
        }


class ConversationalQueryHandler:
    def __init__(
        self,
        rest: RestClient,
        completion: CompletionClient,
        low_stock_threshold: int = 10,
    ):
        self._rest = rest
        self._completion = completion
        self._low_stock_threshold = low_stock_threshold

    async def fetch_profile(self, owner_id: str) -> Profile | None:
        row = await self._rest.select_one(PROFILES, owner_id)
        return Profile.model_validate(row) if row else None

    async def fetch_snapshot(self, owner_id: str, today: date) -> BusinessSnapshot:
        sales, inventory, finance, bills = await asyncio.gather(
            self._rest.select(SALES, owner_id),
            self._rest.select(INVENTORY, owner_id),
            self._rest.select(FINANCE, owner_id),
            self._rest.select(BILLS, owner_id),
        )
        return build_business_snapshot(
            parse_rows(SaleRow, sales),
            parse_rows(InventoryRow, inventory),
            parse_rows(FinanceRow, finance),
            parse_rows(BillRow, bills),
            today,
            self._low_stock_threshold,
        )

    async def answer(
        self,
        message: str,
        owner_id: str | None = None,
        business_type: str | None = None,
        today: date | None = None,
    ) -> ChatReply:
        query_type = detect_query_type(message)
        profile = None
        snapshot = None
        if owner_id:
            profile = await self.fetch_profile(owner_id)
            if query_type != QueryType.CHAT:
                snapshot = await self.fetch_snapshot(owner_id, today or date.today())

        system = build_system_prompt(profile, business_type, query_type)
        if snapshot is not None:
            system += format_context(snapshot)

        log.info(
            "chatbot.query",
            owner=owner_id,
            query_type=query_type.value,
            has_data=snapshot is not None,
        )
        text = await self._completion.complete(system, message)
        return ChatReply(message=text, query_type=query_type, has_data=snapshot is not None)
