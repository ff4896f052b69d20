"""
Shared test fixtures for the livemigrate library.

Usage:
    from tests.fixtures import users_table, user_rows, schema_of
"""

from tests.fixtures.schemas import (
    BASE_TIME,
    downtime_strategy,
    memory_endpoint,
    order_rows,
    orders_table,
    schema_of,
    user_rows,
    users_table,
    zero_downtime_strategy,
)

__all__ = [
    "BASE_TIME",
    "downtime_strategy",
    "memory_endpoint",
    "order_rows",
    "orders_table",
    "schema_of",
    "user_rows",
    "users_table",
    "zero_downtime_strategy",
]
