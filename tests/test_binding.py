import datetime as dt
import decimal

import pytest

from loadshaper.binding import (
    TypeBindingError,
    coerce_value,
    count_placeholders,
    prepare_statement,
    rewrite_placeholders,
    substitute,
)
from loadshaper.scenario import SqlType


def test_unknown_or_missing_type_defaults_to_varchar():
    assert SqlType.parse(None) is SqlType.VARCHAR
    assert SqlType.parse("GEOMETRY") is SqlType.VARCHAR
    assert SqlType.parse("bigint") is SqlType.BIGINT


def test_date_accepts_iso_strings_and_dates():
    assert coerce_value("2024-02-29", SqlType.DATE) == dt.date(2024, 2, 29)
    assert coerce_value(dt.datetime(2024, 1, 2, 3, 4), SqlType.DATE) == dt.date(2024, 1, 2)


@pytest.mark.parametrize("value", ["yesterday", 20240101, "2024-13-01", 1.5])
def test_date_rejects_non_dates(value):
    with pytest.raises(TypeBindingError):
        coerce_value(value, SqlType.DATE)


def test_numeric_coercions():
    assert coerce_value("42", SqlType.INTEGER) == 42
    assert coerce_value(7.0, SqlType.BIGINT) == 7
    assert coerce_value("2.5", SqlType.DOUBLE) == pytest.approx(2.5)
    assert coerce_value("19.99", SqlType.DECIMAL) == decimal.Decimal("19.99")
    assert coerce_value(3, SqlType.NUMERIC) == decimal.Decimal(3)


@pytest.mark.parametrize(
    "value, sql_type",
    [
        (4.5, SqlType.INTEGER),
        (True, SqlType.INTEGER),
        ("forty", SqlType.BIGINT),
        ("abc", SqlType.DOUBLE),
        ("1.2.3", SqlType.DECIMAL),
        ("maybe", SqlType.BOOLEAN),
        (7, SqlType.BOOLEAN),
        ("noon", SqlType.TIMESTAMP),
    ],
)
def test_mismatched_values_raise_binding_errors(value, sql_type):
    with pytest.raises(TypeBindingError):
        coerce_value(value, sql_type)


def test_boolean_and_timestamp_literals():
    assert coerce_value("yes", SqlType.BOOLEAN) is True
    assert coerce_value("F", SqlType.BOOLEAN) is False
    assert coerce_value("2024-05-01T10:30:00", SqlType.TIMESTAMP) == dt.datetime(2024, 5, 1, 10, 30)
    assert coerce_value(dt.date(2024, 5, 1), SqlType.TIMESTAMP) == dt.datetime(2024, 5, 1)


def test_null_binds_for_every_type():
    assert coerce_value(None, SqlType.DATE) is None
    assert coerce_value(None, SqlType.INTEGER) is None


def test_placeholders_inside_quotes_are_ignored():
    sql = "SELECT * FROM t WHERE a = ? AND b = '?' AND c = ?"

    assert count_placeholders(sql) == 2
    rewritten, names = rewrite_placeholders(sql)
    assert rewritten == "SELECT * FROM t WHERE a = :p0 AND b = '?' AND c = :p1"
    assert names == ["p0", "p1"]


def test_prepare_statement_binds_in_declared_order():
    statement, values = prepare_statement(
        "SELECT * FROM items WHERE id = ? AND created > ?",
        [("5", SqlType.INTEGER), ("2024-01-01", SqlType.DATE)],
    )

    assert values == {"p0": 5, "p1": dt.date(2024, 1, 1)}
    assert set(statement._bindparams) == {"p0", "p1"}


def test_prepare_statement_rejects_wrong_arity():
    with pytest.raises(TypeBindingError):
        prepare_statement("SELECT ?", [])


def test_substitute_replaces_known_variables_only():
    text = '{"user": "${user}", "keep": "${missing}"}'

    assert substitute(text, {"user": "ada"}) == '{"user": "ada", "keep": "${missing}"}'
    assert substitute(None, {"user": "ada"}) is None
    assert substitute("plain", {}) == "plain"
