"""
Tests for database initialization.
"""

from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

from thirsty.database.init_db import init_database


def test_creates_all_tables():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    created = init_database(engine)

    assert set(created) == {
        "user_subscriptions",
        "feature_grants",
        "webhook_events",
        "profile_premium_flags",
        "billing_events",
    }
    assert set(inspect(engine).get_table_names()) >= set(created)


def test_is_idempotent():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    first = init_database(engine)
    second = init_database(engine)

    assert first == second
