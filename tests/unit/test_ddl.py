"""Unit tests for DDL module."""

import re

from studio_jobs.ddl import (
    CREDIT_TRANSACTIONS_TABLE_DDL,
    JOBS_TABLE_DDL,
    PROFILES_TABLE_DDL,
    SCHEMA_DDL,
    SYSTEM_CONFIG_TABLE_DDL,
    TASKS_TABLE_DDL,
)


def test_schema_is_idempotent():
    """Every statement can run against an existing schema."""
    for ddl in (PROFILES_TABLE_DDL, JOBS_TABLE_DDL, TASKS_TABLE_DDL, CREDIT_TRANSACTIONS_TABLE_DDL):
        assert "IF NOT EXISTS" in ddl
    assert "ON CONFLICT (key) DO NOTHING" in SCHEMA_DDL


def test_profiles_balances_are_non_negative():
    assert "CHECK (subscription_credits >= 0)" in PROFILES_TABLE_DDL
    assert "CHECK (purchased_credits >= 0)" in PROFILES_TABLE_DDL


def test_jobs_split_matches_cost():
    assert "CHECK (subscription_deducted + purchased_deducted = cost_amount)" in JOBS_TABLE_DDL
    assert "CHECK (NOT is_refunded OR status = 'failed')" in JOBS_TABLE_DDL


def test_one_task_per_job():
    assert "job_id      UUID NOT NULL UNIQUE" in TASKS_TABLE_DDL


def test_schema_creates_tables_in_dependency_order():
    order = [
        SCHEMA_DDL.index("CREATE TABLE IF NOT EXISTS profiles"),
        SCHEMA_DDL.index("CREATE TABLE IF NOT EXISTS generation_jobs"),
        SCHEMA_DDL.index("CREATE TABLE IF NOT EXISTS generation_job_tasks"),
        SCHEMA_DDL.index("CREATE TABLE IF NOT EXISTS credit_transactions"),
    ]
    assert order == sorted(order)


def test_system_config_seeds_the_settings_the_service_reads():
    seeded = re.findall(r"\('(\w+)', '", SYSTEM_CONFIG_TABLE_DDL)

    assert seeded == ["signup_bonus_credits", "credit_costs"]
