from __future__ import annotations

import datetime as dt
import decimal
import re
from typing import Any, Callable, Iterator, Mapping

import sqlalchemy as sa

_VARIABLE_PATTERN = re.compile(r"\$\{([^}]+)\}")

_TRUE_LITERALS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_LITERALS = frozenset({"false", "f", "no", "n", "0"})


class TypeBindingError(ValueError):
    """Raised when a parameter value cannot be bound as its declared SQL type."""


def substitute(text: str | None, variables: Mapping[str, Any]) -> str | None:
    """Replace ``${name}`` references with row values; unknown names are left as-is."""
    if text is None or not variables or "${" not in text:
        return text

    def replace(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        if name not in variables:
            return match.group(0)
        value = variables[name]
        return "" if value is None else str(value)

    return _VARIABLE_PATTERN.sub(replace, text)


def _placeholder_positions(sql: str) -> Iterator[int]:
    quote: str | None = None
    for index, char in enumerate(sql):
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "?":
            yield index


def count_placeholders(sql: str) -> int:
    return sum(1 for _ in _placeholder_positions(sql))


def rewrite_placeholders(sql: str) -> tuple[str, list[str]]:
    """Turn positional ``?`` markers into named ``:p0, :p1, ...`` bind markers."""
    parts: list[str] = []
    names: list[str] = []
    last = 0
    for position in _placeholder_positions(sql):
        name = f"p{len(names)}"
        parts.append(sql[last:position])
        parts.append(f":{name}")
        names.append(name)
        last = position + 1
    parts.append(sql[last:])
    return "".join(parts), names


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("booleans are not integers")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("value has a fractional part")
        return int(value)
    if isinstance(value, decimal.Decimal):
        if value != value.to_integral_value():
            raise ValueError("value has a fractional part")
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_double(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    if isinstance(value, (int, float, decimal.Decimal)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_decimal(value: Any) -> decimal.Decimal:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    if isinstance(value, decimal.Decimal):
        return value
    if isinstance(value, (int, float, str)):
        return decimal.Decimal(str(value).strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_LITERALS:
            return True
        if lowered in _FALSE_LITERALS:
            return False
    raise ValueError("not a boolean literal")


def _to_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        return dt.date.fromisoformat(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_timestamp(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    if isinstance(value, dt.date):
        return dt.datetime.combine(value, dt.time())
    if isinstance(value, str):
        return dt.datetime.fromisoformat(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _to_varchar(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "INTEGER": _to_integer,
    "BIGINT": _to_integer,
    "DOUBLE": _to_double,
    "DECIMAL": _to_decimal,
    "NUMERIC": _to_decimal,
    "BOOLEAN": _to_boolean,
    "DATE": _to_date,
    "TIMESTAMP": _to_timestamp,
    "VARCHAR": _to_varchar,
}

_SQLALCHEMY_TYPES: dict[str, Callable[[], sa.types.TypeEngine]] = {
    "INTEGER": sa.Integer,
    "BIGINT": sa.BigInteger,
    "DOUBLE": sa.Double,
    "DECIMAL": lambda: sa.Numeric(asdecimal=True),
    "NUMERIC": lambda: sa.Numeric(asdecimal=True),
    "BOOLEAN": sa.Boolean,
    "DATE": sa.Date,
    "TIMESTAMP": sa.DateTime,
    "VARCHAR": sa.String,
}


def coerce_value(value: Any, sql_type: Any) -> Any:
    kind = str(getattr(sql_type, "value", sql_type)).upper()
    if value is None:
        return None
    coercer = _COERCERS.get(kind, _to_varchar)
    try:
        return coercer(value)
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise TypeBindingError(f"cannot bind {value!r} as {kind}: {exc}") from exc


def sqlalchemy_type(sql_type: Any) -> sa.types.TypeEngine:
    kind = str(getattr(sql_type, "value", sql_type)).upper()
    return _SQLALCHEMY_TYPES.get(kind, sa.String)()


def prepare_statement(
    sql: str,
    parameters: list[tuple[Any, Any]],
) -> tuple[sa.TextClause, dict[str, Any]]:
    """Build a bound text clause from ``(value, sql_type)`` pairs in declared order."""
    rewritten, names = rewrite_placeholders(sql)
    if len(names) != len(parameters):
        raise TypeBindingError(
            f"statement expects {len(names)} parameter(s), got {len(parameters)}"
        )
    bind_params = []
    values: dict[str, Any] = {}
    for name, (value, sql_type) in zip(names, parameters):
        values[name] = coerce_value(value, sql_type)
        bind_params.append(sa.bindparam(name, type_=sqlalchemy_type(sql_type)))
    statement = sa.text(rewritten)
    if bind_params:
        statement = statement.bindparams(*bind_params)
    return statement, values
