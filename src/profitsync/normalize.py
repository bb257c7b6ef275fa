from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping

from profitsync.errors import ValidationError
from profitsync.util import utc_midnight


NO_ID = ""
"""Canonical sentinel for an absent campaign / ad set / variant id."""

ZERO = Decimal("0")
_MICROS = Decimal("1000000")

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_ISO_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[T ]")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_DASH_DMY_RE = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")


def canonical_id(value: Any) -> str:
    """
    The one place an optional identifier becomes a key component.

    None, "", whitespace and the literal strings "null"/"none" all map to NO_ID.
    Used on both the upsert path and the lookup path.
    """
    if value is None:
        return NO_ID
    s = str(value).strip()
    if s.lower() in {"", "null", "none"}:
        return NO_ID
    return s


def _calendar_date(year: str, month: str, day: str, raw: Any) -> date:
    try:
        return date(int(year), int(month), int(day))
    except ValueError as e:
        raise ValidationError(f"invalid date: {raw!r}") from e


def parse_calendar_date(value: Any, *, slash_order: str = "DMY") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        raise ValidationError("missing date")
    s = str(value).strip()

    m = _ISO_DATE_RE.match(s) or _ISO_DATETIME_RE.match(s)
    if m:
        # Datetimes keep the calendar date as written; the offset is not applied.
        return _calendar_date(m.group(1), m.group(2), m.group(3), value)

    m = _SLASH_DATE_RE.match(s)
    if m:
        a, b, year = m.groups()
        if slash_order == "MDY":
            return _calendar_date(year, a, b, value)
        return _calendar_date(year, b, a, value)

    m = _DASH_DMY_RE.match(s)
    if m:
        d, mo, year = m.groups()
        return _calendar_date(year, mo, d, value)

    raise ValidationError(f"unrecognized date format: {value!r}")


def to_utc_midnight(value: Any, *, slash_order: str = "DMY") -> datetime:
    return utc_midnight(parse_calendar_date(value, slash_order=slash_order))


def to_utc_instant(value: Any) -> datetime | None:
    if value is None or str(value).strip() == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = re.sub(r"\s+", "", str(value)).replace(",", ".")
    if s == "":
        return ZERO
    try:
        d = Decimal(s)
    except InvalidOperation:
        return ZERO
    return d if d.is_finite() else ZERO


def micros_to_units(value: Any) -> Decimal:
    return parse_decimal(value) / _MICROS


def parse_count(value: Any) -> int:
    return int(parse_decimal(value).to_integral_value(rounding=ROUND_HALF_UP))


def _ratio(num: Decimal, den: Decimal, scale: Decimal = Decimal(1)) -> Decimal:
    if den == 0:
        return ZERO
    return num / den * scale


def _require(raw: Mapping[str, Any], key: str) -> Any:
    value = raw.get(key)
    if value is None or (isinstance(value, str) and value.strip() == ""):
        raise ValidationError(f"missing required field {key!r}")
    return value


def _as_list(raw: Mapping[str, Any], key: str) -> list[dict[str, Any]]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"expected list for {key!r}, got {type(value).__name__}")
    return [x for x in value if isinstance(x, dict)]


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


# Canonical records


@dataclass(frozen=True)
class SpendRecord:
    account_id: str
    date: datetime
    campaign_id: str = NO_ID
    ad_set_id: str = NO_ID
    campaign_name: str | None = None
    ad_set_name: str | None = None
    spend: Decimal = ZERO
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: Decimal = ZERO
    roas: Decimal = ZERO
    currency: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "campaign_id", canonical_id(self.campaign_id))
        object.__setattr__(self, "ad_set_id", canonical_id(self.ad_set_id))
        if self.date.tzinfo is None or self.date.utcoffset() or self.date.time() != datetime.min.time():
            raise ValidationError(f"spend date must be UTC midnight, got {self.date!r}")

    @property
    def cpc(self) -> Decimal:
        return _ratio(self.spend, Decimal(self.clicks))

    @property
    def cpm(self) -> Decimal:
        return _ratio(self.spend, Decimal(self.impressions), Decimal(1000))

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.account_id, self.date.date().isoformat(), self.campaign_id, self.ad_set_id)


@dataclass(frozen=True)
class LineItemRecord:
    external_line_item_id: str
    external_variant_id: str = NO_ID
    title: str | None = None
    sku: str | None = None
    quantity: int = 0
    price: Decimal = ZERO
    total_discount: Decimal = ZERO
    tax_amount: Decimal = ZERO

    def __post_init__(self) -> None:
        object.__setattr__(self, "external_variant_id", canonical_id(self.external_variant_id))


@dataclass(frozen=True)
class RefundRecord:
    external_refund_id: str
    amount: Decimal = ZERO
    note: str | None = None
    restock: bool = False
    processed_at: datetime | None = None


@dataclass(frozen=True)
class TransactionRecord:
    external_transaction_id: str
    kind: str
    gateway: str | None = None
    status: str | None = None
    amount: Decimal = ZERO
    fee: Decimal | None = None
    currency: str | None = None
    processed_at: datetime | None = None


@dataclass(frozen=True)
class OrderRecord:
    store_id: str
    external_order_id: str
    order_number: str | None = None
    currency: str | None = None
    total_price: Decimal = ZERO
    subtotal_price: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_discounts: Decimal = ZERO
    total_shipping_price: Decimal = ZERO
    financial_status: str | None = None
    fulfillment_status: str | None = None
    customer_email: str | None = None
    shipping_country: str | None = None
    tags: tuple[str, ...] = ()
    ordered_at: datetime | None = None
    processed_at: datetime | None = None
    cancelled_at: datetime | None = None
    upstream_updated_at: datetime | None = None
    line_items: tuple[LineItemRecord, ...] = ()
    refunds: tuple[RefundRecord, ...] = ()
    # None means "not fetched"; stored transactions are then left untouched.
    transactions: tuple[TransactionRecord, ...] | None = None

    @property
    def total_refunds(self) -> Decimal:
        return sum((r.amount for r in self.refunds), ZERO)

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.store_id, self.external_order_id)


@dataclass(frozen=True)
class VariantRecord:
    store_id: str
    external_variant_id: str
    external_product_id: str = NO_ID
    title: str | None = None
    sku: str | None = None
    price: Decimal = ZERO
    shipping_exempt: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "external_variant_id", canonical_id(self.external_variant_id))
        object.__setattr__(self, "external_product_id", canonical_id(self.external_product_id))
        if self.external_variant_id == NO_ID:
            raise ValidationError("variant without id")

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.store_id, self.external_variant_id)


@dataclass(frozen=True)
class VariantCostRecord:
    """Unit cost reported by the store platform for one variant."""

    store_id: str
    external_variant_id: str
    cost_price: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "external_variant_id", canonical_id(self.external_variant_id))
        if self.external_variant_id == NO_ID:
            raise ValidationError("variant cost without variant id")
        if self.cost_price < 0:
            raise ValidationError(f"negative cost for variant {self.external_variant_id}")

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.store_id, self.external_variant_id)


NormalizedRecord = SpendRecord | OrderRecord | VariantRecord | VariantCostRecord


# Shopify


def normalize_shopify_transaction(raw: Mapping[str, Any]) -> TransactionRecord:
    receipt = raw.get("receipt") if isinstance(raw.get("receipt"), dict) else {}
    fee_raw = receipt.get("fee_amount") if receipt else None
    return TransactionRecord(
        external_transaction_id=str(_require(raw, "id")),
        kind=str(raw.get("kind") or "").strip().lower(),
        gateway=_opt_str(raw.get("gateway")),
        status=_opt_str(raw.get("status")),
        amount=parse_decimal(raw.get("amount")),
        fee=parse_decimal(fee_raw) if fee_raw not in (None, "") else None,
        currency=_opt_str(raw.get("currency")),
        processed_at=to_utc_instant(raw.get("processed_at") or raw.get("created_at")),
    )


def normalize_shopify_order(raw: Mapping[str, Any], *, store_id: str) -> OrderRecord:
    order_id = str(_require(raw, "id"))

    line_items: list[LineItemRecord] = []
    for li in _as_list(raw, "line_items"):
        tax = sum((parse_decimal(t.get("price")) for t in li.get("tax_lines") or [] if isinstance(t, dict)), ZERO)
        line_items.append(
            LineItemRecord(
                external_line_item_id=str(_require(li, "id")),
                external_variant_id=canonical_id(li.get("variant_id")),
                title=_opt_str(li.get("title")),
                sku=_opt_str(li.get("sku")),
                quantity=parse_count(li.get("quantity")),
                price=parse_decimal(li.get("price")),
                total_discount=parse_decimal(li.get("total_discount")),
                tax_amount=tax,
            )
        )

    refunds: list[RefundRecord] = []
    for rf in _as_list(raw, "refunds"):
        # A refund's amount is the sum of its own refund transactions.
        amount = sum(
            (parse_decimal(t.get("amount")) for t in _as_list(rf, "transactions")
             if str(t.get("kind") or "refund").lower() == "refund"
             and str(t.get("status") or "success").lower() == "success"),
            ZERO,
        )
        restock = bool(rf.get("restock")) or any(
            bool(x.get("restock_type")) and x.get("restock_type") != "no_restock"
            for x in _as_list(rf, "refund_line_items")
        )
        refunds.append(
            RefundRecord(
                external_refund_id=str(_require(rf, "id")),
                amount=amount,
                note=_opt_str(rf.get("note")),
                restock=restock,
                processed_at=to_utc_instant(rf.get("processed_at") or rf.get("created_at")),
            )
        )

    transactions: tuple[TransactionRecord, ...] | None = None
    if "transactions" in raw:
        transactions = tuple(normalize_shopify_transaction(t) for t in _as_list(raw, "transactions"))

    shipping_set = raw.get("total_shipping_price_set") or {}
    shop_money = shipping_set.get("shop_money") if isinstance(shipping_set, dict) else None
    if isinstance(shop_money, dict):
        shipping_total = parse_decimal(shop_money.get("amount"))
    else:
        shipping_total = sum(
            (parse_decimal(s.get("price")) for s in _as_list(raw, "shipping_lines")),
            ZERO,
        )

    customer = raw.get("customer") if isinstance(raw.get("customer"), dict) else {}
    email = _opt_str(raw.get("email")) or _opt_str(customer.get("email") if customer else None)
    address = raw.get("shipping_address") if isinstance(raw.get("shipping_address"), dict) else {}
    tags_raw = str(raw.get("tags") or "")

    return OrderRecord(
        store_id=store_id,
        external_order_id=order_id,
        order_number=_opt_str(raw.get("order_number") or raw.get("name")),
        currency=_opt_str(raw.get("currency")),
        total_price=parse_decimal(raw.get("total_price")),
        subtotal_price=parse_decimal(raw.get("subtotal_price")),
        total_tax=parse_decimal(raw.get("total_tax")),
        total_discounts=parse_decimal(raw.get("total_discounts")),
        total_shipping_price=shipping_total,
        financial_status=_opt_str(raw.get("financial_status")),
        fulfillment_status=_opt_str(raw.get("fulfillment_status")),
        customer_email=email.lower() if email else None,
        shipping_country=_opt_str(address.get("country_code") if address else None),
        tags=tuple(t.strip() for t in tags_raw.split(",") if t.strip()),
        ordered_at=to_utc_instant(raw.get("created_at")),
        processed_at=to_utc_instant(raw.get("processed_at")),
        cancelled_at=to_utc_instant(raw.get("cancelled_at")),
        upstream_updated_at=to_utc_instant(raw.get("updated_at")),
        line_items=tuple(line_items),
        refunds=tuple(refunds),
        transactions=transactions,
    )


def normalize_shopify_product(raw: Mapping[str, Any], *, store_id: str) -> list[VariantRecord | VariantCostRecord]:
    """
    One VariantRecord per variant, each followed by a VariantCostRecord when the
    variant carries a positive `inventory_cost`.
    """
    product_id = str(_require(raw, "id"))
    product_title = _opt_str(raw.get("title"))
    out: list[VariantRecord | VariantCostRecord] = []
    for v in _as_list(raw, "variants"):
        variant_title = _opt_str(v.get("title"))
        if product_title and variant_title and variant_title != "Default Title":
            title = f"{product_title} - {variant_title}"
        else:
            title = product_title or variant_title
        out.append(
            VariantRecord(
                store_id=store_id,
                external_variant_id=str(_require(v, "id")),
                external_product_id=product_id,
                title=title,
                sku=_opt_str(v.get("sku")),
                price=parse_decimal(v.get("price")),
                shipping_exempt=v.get("requires_shipping") is False,
            )
        )
        cost = parse_decimal(v.get("inventory_cost"))
        if cost > 0:
            out.append(VariantCostRecord(store_id=store_id, external_variant_id=str(v["id"]), cost_price=cost))
    return out


# Meta / Facebook

PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase")


def _meta_conversions(actions: Any) -> int:
    if not isinstance(actions, list):
        return 0
    for action_type in PURCHASE_ACTION_TYPES:
        for a in actions:
            if isinstance(a, dict) and a.get("action_type") == action_type:
                return parse_count(a.get("value"))
    return 0


def _meta_roas(purchase_roas: Any) -> Decimal:
    if isinstance(purchase_roas, list) and purchase_roas and isinstance(purchase_roas[0], dict):
        return parse_decimal(purchase_roas[0].get("value"))
    return ZERO


def normalize_meta_insight(
    raw: Mapping[str, Any],
    *,
    account_id: str,
    currency: str | None = None,
) -> SpendRecord:
    spend = parse_decimal(raw.get("spend"))
    roas = _meta_roas(raw.get("purchase_roas"))
    return SpendRecord(
        account_id=account_id,
        date=to_utc_midnight(_require(raw, "date_start")),
        campaign_id=canonical_id(raw.get("campaign_id")),
        ad_set_id=canonical_id(raw.get("adset_id")),
        campaign_name=_opt_str(raw.get("campaign_name")),
        ad_set_name=_opt_str(raw.get("adset_name")),
        spend=spend,
        impressions=parse_count(raw.get("impressions")),
        clicks=parse_count(raw.get("clicks")),
        conversions=_meta_conversions(raw.get("actions")),
        revenue=roas * spend,
        roas=roas,
        currency=_opt_str(raw.get("account_currency")) or currency,
    )


# Google Ads via spreadsheet

SHEET_COLUMNS = (
    "date",
    "campaign_id",
    "campaign_name",
    "spend",
    "impressions",
    "clicks",
    "conversions",
    "conversion_value",
    "currency",
)


def normalize_sheet_row(
    row: list[Any],
    *,
    account_id: str,
    slash_order: str = "DMY",
    default_currency: str = "SEK",
    spend_in_micros: bool = False,
) -> SpendRecord:
    cells = [str(c).strip() if c is not None else "" for c in row]
    cells += [""] * (len(SHEET_COLUMNS) - len(cells))
    values = dict(zip(SHEET_COLUMNS, cells))

    if not values["date"]:
        raise ValidationError("sheet row without date")
    spend = micros_to_units(values["spend"]) if spend_in_micros else parse_decimal(values["spend"])
    revenue = parse_decimal(values["conversion_value"])
    return SpendRecord(
        account_id=account_id,
        date=to_utc_midnight(values["date"], slash_order=slash_order),
        campaign_id=canonical_id(values["campaign_id"]),
        campaign_name=values["campaign_name"] or None,
        spend=spend,
        impressions=parse_count(values["impressions"]),
        clicks=parse_count(values["clicks"]),
        conversions=parse_count(values["conversions"]),
        revenue=revenue,
        roas=_ratio(revenue, spend),
        currency=values["currency"] or default_currency,
    )
