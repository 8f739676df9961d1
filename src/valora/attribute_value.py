"""Typed EAV attribute values.

An attribute holds exactly one of text, number, date or boolean. The four
``value_*`` columns are only the storage encoding of that choice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Union

TEXT = "Text"
NUMBER = "Number"
DATE = "Date"
BOOLEAN = "Boolean"

DATA_TYPES = (TEXT, NUMBER, DATE, BOOLEAN)

COLUMNS = ("value_text", "value_number", "value_date", "value_boolean")


class AttributeCoercionError(ValueError):
    def __init__(self, data_type: str, value: Any) -> None:
        super().__init__(f"cannot store {value!r} as {data_type}")
        self.data_type = data_type
        self.value = value


@dataclass(frozen=True)
class Text:
    value: str
    data_type = TEXT


@dataclass(frozen=True)
class Number:
    value: Decimal
    data_type = NUMBER


@dataclass(frozen=True)
class Date:
    value: datetime
    data_type = DATE


@dataclass(frozen=True)
class Boolean:
    value: bool
    data_type = BOOLEAN


AttributeValue = Union[Text, Number, Date, Boolean]


def normalize_data_type(data_type: str | None) -> str:
    if not isinstance(data_type, str):
        return TEXT
    for known in DATA_TYPES:
        if known.lower() == data_type.strip().lower():
            return known
    return TEXT


def _parse_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise AttributeCoercionError(NUMBER, value)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, str) and value.strip():
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise AttributeCoercionError(NUMBER, value) from exc
    raise AttributeCoercionError(NUMBER, value)


def _to_decimal(value: Any) -> Decimal:
    number = _parse_decimal(value)
    # NaN and infinities have no JSON form
    if not number.is_finite():
        raise AttributeCoercionError(NUMBER, value)
    return number


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise AttributeCoercionError(DATE, value) from exc
    else:
        raise AttributeCoercionError(DATE, value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    raise AttributeCoercionError(BOOLEAN, value)


def coerce(data_type: str, value: Any) -> AttributeValue:
    """Build the typed value for a field of ``data_type``.

    Raises AttributeCoercionError when the value does not fit the type.
    """
    data_type = normalize_data_type(data_type)
    if data_type == NUMBER:
        return Number(_to_decimal(value))
    if data_type == DATE:
        return Date(_to_datetime(value))
    if data_type == BOOLEAN:
        return Boolean(_to_bool(value))
    if isinstance(value, str):
        return Text(value)
    if isinstance(value, bool):
        return Text("true" if value else "false")
    return Text(str(value))


def to_columns(value: AttributeValue) -> dict:
    """Encode a value as the four storage columns, all others null."""
    columns = {name: None for name in COLUMNS}
    if isinstance(value, Number):
        columns["value_number"] = value.value
    elif isinstance(value, Date):
        columns["value_date"] = value.value
    elif isinstance(value, Boolean):
        columns["value_boolean"] = value.value
    else:
        columns["value_text"] = value.value
    return columns


def from_columns(data_type: str, row: dict) -> AttributeValue | None:
    data_type = normalize_data_type(data_type)
    if data_type == NUMBER and row.get("value_number") is not None:
        number = row["value_number"]
        return Number(number if isinstance(number, Decimal) else _to_decimal(number))
    if data_type == DATE and row.get("value_date") is not None:
        return Date(_to_datetime(row["value_date"]))
    if data_type == BOOLEAN and row.get("value_boolean") is not None:
        return Boolean(bool(row["value_boolean"]))
    if row.get("value_text") is not None:
        return Text(row["value_text"])
    return None


def to_json(value: AttributeValue | None) -> Any:
    """Plain JSON value: numbers stay numbers, dates become ISO strings."""
    if value is None:
        return None
    if isinstance(value, Number):
        number = value.value
        if number == number.to_integral_value():
            return int(number)
        return float(number)
    if isinstance(value, Date):
        return value.value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value.value
