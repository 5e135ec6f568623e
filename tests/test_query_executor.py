import pytest
from sqlalchemy import text

from backend.services.db_utils import QueryExecutor, bind_positional, create_store_engine
from backend.services.errors import ExecutionError


@pytest.fixture()
def engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'shop.db'}")
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE orders (id INTEGER, customer_id INTEGER, amount REAL, status TEXT, created_at TEXT)"
        ))
        conn.execute(text(
            "INSERT INTO orders VALUES "
            "(1, 42, 10.5, 'paid', '2026-01-01'), "
            "(2, 42, 20.0, '?', '2026-01-02'), "
            "(3, 7, 5.0, 'paid', '2026-01-03')"
        ))
    yield engine
    engine.dispose()


def test_executes_with_positional_params(engine):
    rows = QueryExecutor(engine).execute(
        "SELECT id, amount FROM orders WHERE customer_id = ? ORDER BY id", (42,)
    )
    assert rows == [{"id": 1, "amount": 10.5}, {"id": 2, "amount": 20.0}]


def test_question_mark_inside_literal_is_not_a_placeholder(engine):
    rows = QueryExecutor(engine).execute(
        "SELECT id FROM orders WHERE status = '?' AND customer_id = ?", (42,)
    )
    assert rows == [{"id": 2}]


def test_params_are_never_interpolated(engine):
    rows = QueryExecutor(engine).execute("SELECT id FROM orders WHERE customer_id = ?", ("42 OR 1=1",))
    assert rows == []


def test_placeholder_count_mismatch_is_an_execution_error(engine):
    executor = QueryExecutor(engine)
    with pytest.raises(ExecutionError):
        executor.execute("SELECT id FROM orders WHERE customer_id = ?", ())
    with pytest.raises(ExecutionError):
        executor.execute("SELECT id FROM orders", (1,))


def test_store_error_is_wrapped_and_connection_released(engine):
    executor = QueryExecutor(engine)
    with pytest.raises(ExecutionError, match="Database error"):
        executor.execute("SELECT invalid_col FROM orders", ())
    assert engine.pool.checkedout() == 0

    rows = executor.execute("SELECT COUNT(*) AS n FROM orders", ())
    assert rows == [{"n": 3}]
    assert engine.pool.checkedout() == 0


def test_rows_are_capped(engine):
    rows = QueryExecutor(engine, max_rows=2, chunk_size=1).execute("SELECT id FROM orders ORDER BY id", ())
    assert [r["id"] for r in rows] == [1, 2]


def test_bind_positional():
    sql, binds = bind_positional("SELECT id FROM orders WHERE customer_id = ? AND status = ?", (1, "paid"))
    assert sql == "SELECT id FROM orders WHERE customer_id = :p1 AND status = :p2"
    assert binds == {"p1": 1, "p2": "paid"}
