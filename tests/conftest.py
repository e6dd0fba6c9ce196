"""
Pytest configuration and fixtures for dq-audit tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
import os
from datetime import date
from typing import Callable, Generator

import psycopg
import pytest
from pyspark.sql import SparkSession
from testcontainers.postgres import PostgresContainer

from dq_audit.core.models import DailyAuditRow
from dq_audit.warehouse.audit_table import InMemoryAuditSink, PostgresAuditSink
from dq_audit.warehouse.connection import DatabaseConnectionPool


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers or Spark"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# SPARK FIXTURES
# =======================

@pytest.fixture(scope="session")
def spark_session() -> Generator[SparkSession, None, None]:
    """
    Create a Spark session for testing with local mode

    Yields:
        SparkSession configured for local testing
    """
    spark = (
        SparkSession.builder
        .appName("dq-audit-test")
        .master("local[2]")
        .config("spark.sql.shuffle.partitions", "2")
        .config("spark.sql.adaptive.enabled", "true")
        .config("spark.driver.memory", "1g")
        .config("spark.ui.enabled", "false")  # Disable UI for tests
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.sql.warehouse.dir", "/tmp/spark-warehouse")
        .getOrCreate()
    )

    # Set log level to WARN to reduce test output noise
    spark.sparkContext.setLogLevel("WARN")

    yield spark

    spark.stop()


@pytest.fixture(scope="function")
def spark_test_session(spark_session) -> SparkSession:
    """
    Function-scoped Spark session that clears cached frames between tests
    """
    spark_session.catalog.clearCache()
    return spark_session


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance with the audit table created
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_datawarehouse",
        driver=None,
    ) as postgres:
        init_sql_path = os.path.join(
            os.path.dirname(os.path.dirname(__file__)),
            "docker",
            "init-db.sql"
        )

        with open(init_sql_path, 'r') as f:
            init_sql = f.read()

        with psycopg.connect(postgres.get_connection_url()) as conn:
            with conn.cursor() as cur:
                cur.execute(init_sql)
            conn.commit()

        yield postgres


@pytest.fixture(scope="function")
def db_connection(postgres_container) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a database connection for a single test
    """
    with psycopg.connect(postgres_container.get_connection_url()) as conn:
        yield conn
        conn.rollback()


@pytest.fixture(scope="function")
def clean_db(db_connection) -> Generator[psycopg.Connection, None, None]:
    """
    Provide an empty audit table
    """
    with db_connection.cursor() as cur:
        cur.execute("TRUNCATE TABLE dq_audit")
    db_connection.commit()

    yield db_connection


@pytest.fixture(scope="function")
def db_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Open connection pool against the test container
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_datawarehouse",
        user="test_pipeline",
        password="test_password",
        max_size=4,
    )
    pool.open()
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def postgres_sink(clean_db, db_pool) -> PostgresAuditSink:
    return PostgresAuditSink(db_pool, statement_timeout=10.0)


# =======================
# IN-MEMORY FIXTURES
# =======================

@pytest.fixture(scope="function")
def memory_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def make_event() -> Callable[..., dict]:
    """
    Factory of raw event rows (all values strings, like the CSV reader yields)
    """
    def factory(event_id, transaction_id, file_name="f.csv", status="OK",
                event_time="2024-01-05T08:00:00") -> dict:
        return {
            "event_id": event_id,
            "transaction_id": transaction_id,
            "file_name": file_name,
            "status": status,
            "event_time": event_time,
        }

    return factory


@pytest.fixture
def make_transaction() -> Callable[..., dict]:
    """
    Factory of raw transaction rows
    """
    def factory(transaction_id, amount="10.00", customer_id="C1",
                load_time="2024-01-05T09:00:00") -> dict:
        return {
            "transaction_id": transaction_id,
            "amount": amount,
            "customer_id": customer_id,
            "load_time": load_time,
        }

    return factory


@pytest.fixture
def make_daily() -> Callable[..., DailyAuditRow]:
    """
    Factory of DailyAuditRow with error_rate derived from the counts
    """
    def factory(file_name: str, load_date: date, nb_total: int, nb_invalid: int) -> DailyAuditRow:
        return DailyAuditRow(
            load_date=load_date,
            file_name=file_name,
            nb_total=nb_total,
            nb_invalid=nb_invalid,
            error_rate=nb_invalid / nb_total if nb_total else None,
        )

    return factory


# =======================
# FILE FIXTURES
# =======================

@pytest.fixture
def write_feed_dir(tmp_path) -> Callable[..., str]:
    """
    Write CSV feeds laid out as <tmp>/data/<YYYY-MM-DD>/{events,transactions}.csv

    Returns:
        Factory taking (load_date, event_lines, transaction_lines) and
        returning the data directory
    """
    data_dir = tmp_path / "data"

    def factory(load_date: date, event_lines: list[str], transaction_lines: list[str]) -> str:
        day_dir = data_dir / load_date.isoformat()
        day_dir.mkdir(parents=True, exist_ok=True)
        (day_dir / "events.csv").write_text(
            "\n".join(["event_id,transaction_id,file_name,status,event_time", *event_lines]) + "\n"
        )
        (day_dir / "transactions.csv").write_text(
            "\n".join(["transaction_id,amount,customer_id,load_time", *transaction_lines]) + "\n"
        )
        return str(data_dir)

    return factory


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """
    Keep DQ_AUDIT_* variables and a stray config/audit.yaml out of tests
    """
    for name in list(os.environ):
        if name.startswith("DQ_AUDIT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DQ_AUDIT_CONFIG", str(tmp_path / "absent.yaml"))
