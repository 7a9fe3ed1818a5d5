"""Mapping raw source items onto NormalizedRecord."""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from ..models.base import RecordType
from ..models.records import NormalizedRecord
from ..resolution.normalize import clean_company_number, extract_postcode, normalize_postcode

if TYPE_CHECKING:
    from .base import SourceConfig

# Normalized field -> default source key. Dotted keys address nested dicts.
DEFAULT_FIELD_MAP = {
    "regulator_id": "regulator_id",
    "offender_name": "offender_name",
    "offender_address": "offender_address",
    "offender_postcode": "offender_postcode",
    "company_number": "company_number",
    "action_date": "action_date",
    "fine": "fine",
    "costs": "costs",
    "result": "result",
    "description": "description",
    "legislation": "legislation",
    "url": "url",
    "record_type": "record_type",
}

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d %B %Y", "%d %b %Y")
_MONEY_STRIP_RE = re.compile(r"[£$€,\s]")


def parse_date(value: Any) -> date | None:
    """Parse ISO, DD/MM/YYYY, DD-MM-YYYY or "12 March 2024"; None otherwise."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # ISO timestamps ("2024-03-12T00:00:00Z")
    if len(text) > 10 and text[4:5] == "-" and text[10:11] in ("T", " "):
        text = text[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_money(value: Any) -> Decimal | None:
    """Parse "£1,500.00", "1500" or 1500.0 into Decimal quantized to pence."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    text = _MONEY_STRIP_RE.sub("", str(value))
    if not text:
        return None
    try:
        return Decimal(text).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value if v)
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def lookup(item: dict[str, Any], path: str) -> Any:
    """Read ``path`` ("a.b.c") from a nested dict."""
    current: Any = item
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def flatten_item(item: dict[str, Any], id_field: str = "id") -> dict[str, Any]:
    """Merge Airtable-style ``{"id", "fields": {...}}`` items into one dict."""
    fields = item.get("fields")
    if isinstance(fields, dict):
        merged = dict(fields)
        merged.setdefault(id_field, item.get("id"))
        merged.setdefault("regulator_id", item.get("id"))
        return merged
    return dict(item)


class RecordTransformer:
    """Turns raw source items into NormalizedRecord instances."""

    def __init__(self, config: "SourceConfig"):
        self.source = config.source
        self.record_type = config.record_type
        self.field_map = {**DEFAULT_FIELD_MAP, "regulator_id": config.id_field, **config.field_map}

    def item_id(self, item: dict[str, Any]) -> str | None:
        value = lookup(item, self.field_map["regulator_id"])
        return clean_text(value)

    def to_record(self, item: dict[str, Any], page: int) -> NormalizedRecord:
        """Normalize one raw item.

        Raises:
            ValueError: If the item lacks a usable id or offender name
        """
        def get(name: str) -> Any:
            return lookup(item, self.field_map[name])

        address = clean_text(get("offender_address"))
        postcode = normalize_postcode(clean_text(get("offender_postcode"))) or extract_postcode(address)

        raw_type = clean_text(get("record_type"))
        record_type = self.record_type
        if raw_type and raw_type.lower() in {t.value for t in RecordType}:
            record_type = RecordType(raw_type.lower())

        return NormalizedRecord(
            source=self.source,
            regulator_id=self.item_id(item) or "",
            record_type=record_type,
            offender_name=clean_text(get("offender_name")) or "",
            offender_address=address,
            offender_postcode=postcode,
            company_number=clean_company_number(clean_text(get("company_number"))),
            action_date=parse_date(get("action_date")),
            fine=parse_money(get("fine")),
            costs=parse_money(get("costs")),
            result=clean_text(get("result")),
            description=clean_text(get("description")),
            legislation=clean_text(get("legislation")),
            url=clean_text(get("url")),
            page=page,
            raw=item,
        )
