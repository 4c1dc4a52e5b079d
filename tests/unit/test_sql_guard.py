import pytest

from execution.guard import strip_sql, validate_read_only
from utils.errors import ValidationError


def test_strip_sql_rejects_empty():
    with pytest.raises(ValidationError, match="SQL is empty"):
        strip_sql("   \n ")


def test_validate_read_only_rejects_multiple_statements():
    with pytest.raises(ValidationError, match="Multiple SQL statements"):
        validate_read_only("SELECT 1; SELECT 2;")


def test_validate_read_only_rejects_non_select_statement():
    with pytest.raises(ValidationError, match="Only SELECT/CTE queries are allowed"):
        validate_read_only("DELETE FROM fact_sales")


def test_validate_read_only_rejects_blocked_keyword_in_cte():
    with pytest.raises(ValidationError, match="Blocked SQL keyword detected: delete"):
        validate_read_only("WITH gone AS (DELETE FROM fact_sales RETURNING *) SELECT * FROM gone")


def test_validate_read_only_accepts_trailing_semicolon():
    assert validate_read_only("  select id from users;  ") == "select id from users"
