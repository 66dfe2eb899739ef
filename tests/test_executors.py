import httpx
import pytest
import sqlalchemy as sa

from loadshaper.executors import (
    AttemptContext,
    FailureKind,
    HttpExecutor,
    SqlExecutor,
    create_executor,
)
from loadshaper.scenario import BindParameter, Protocol, SqlType, WorkloadConfigError


def _context(scenario, variables=None):
    return AttemptContext(scenario, scheduled_offset=0.25, variables=variables or {})


def _row_count(pool, where=""):
    with pool.connection() as connection:
        return connection.execute(sa.text(f"SELECT COUNT(*) FROM items {where}")).scalar_one()


class TestSqlExecutor:
    def test_insert_is_executed_and_committed(self, make_scenario, sqlite_pool):
        scenario = make_scenario(
            protocol=Protocol.SQL,
            target="INSERT INTO items (id, name, created) VALUES (?, ?, ?)",
            parameters=(
                BindParameter("2", SqlType.INTEGER),
                BindParameter("second", SqlType.VARCHAR),
                BindParameter("2024-03-01", SqlType.DATE),
            ),
        )

        sample = SqlExecutor(sqlite_pool).execute(_context(scenario))

        assert sample.ok
        assert sample.scenario == scenario.name
        assert sample.scheduled_offset == 0.25
        assert sample.latency_s >= 0
        assert _row_count(sqlite_pool, "WHERE id = 2") == 1

    def test_select_rows_are_consumed(self, make_scenario, sqlite_pool):
        scenario = make_scenario(
            protocol=Protocol.SQL,
            target="SELECT name FROM items WHERE id = ?",
            parameters=(BindParameter(1, SqlType.INTEGER),),
        )

        assert SqlExecutor(sqlite_pool).execute(_context(scenario)).ok

    def test_date_parameter_with_non_date_value_is_a_binding_failure(self, make_scenario, sqlite_pool):
        scenario = make_scenario(
            protocol=Protocol.SQL,
            target="SELECT * FROM items WHERE created = ?",
            parameters=(BindParameter("not-a-date", SqlType.DATE),),
        )

        sample = SqlExecutor(sqlite_pool).execute(_context(scenario))

        assert not sample.ok
        assert sample.failure is FailureKind.TYPE_BINDING_ERROR
        assert sqlite_pool.engine.pool.checkedout() == 0

    def test_bad_statement_is_a_protocol_failure_and_releases_connection(
        self, make_scenario, sqlite_pool
    ):
        scenario = make_scenario(protocol=Protocol.SQL, target="SELECT * FROM no_such_table")

        sample = SqlExecutor(sqlite_pool).execute(_context(scenario))

        assert sample.failure is FailureKind.PROTOCOL_ERROR
        assert "no_such_table" in sample.detail
        assert sqlite_pool.engine.pool.checkedout() == 0

    def test_row_variables_are_substituted_into_parameters(self, make_scenario, sqlite_pool):
        scenario = make_scenario(
            protocol=Protocol.SQL,
            target="INSERT INTO items (id, name, created) VALUES (?, '${name}', ?)",
            parameters=(
                BindParameter("${id}", SqlType.INTEGER),
                BindParameter("${day}", SqlType.DATE),
            ),
        )
        variables = {"id": "11", "name": "from-csv", "day": "2024-06-30"}

        sample = SqlExecutor(sqlite_pool).execute(_context(scenario, variables))

        assert sample.ok
        assert _row_count(sqlite_pool, "WHERE id = 11 AND name = 'from-csv'") == 1


class TestHttpExecutor:
    def test_successful_post_sends_body_with_content_type(self, make_scenario, http_server):
        scenario = make_scenario(
            target=f"{http_server.base_url}/orders/${{order}}",
            method="POST",
            body='{"order": "${order}"}',
        )
        executor = HttpExecutor.for_scenario(scenario)
        try:
            sample = executor.execute(_context(scenario, {"order": "17"}))
        finally:
            executor.close()

        assert sample.ok
        request = http_server.requests[-1]
        assert request["method"] == "POST"
        assert request["path"] == "/orders/17"
        assert request["body"] == '{"order": "17"}'
        assert request["content_type"] == "application/json"

    def test_server_error_status_is_a_protocol_failure(self, make_scenario, http_server):
        scenario = make_scenario(target=f"{http_server.base_url}/fail")
        executor = HttpExecutor.for_scenario(scenario)
        try:
            sample = executor.execute(_context(scenario))
        finally:
            executor.close()

        assert sample.failure is FailureKind.PROTOCOL_ERROR
        assert sample.detail == "HTTP 500"

    def test_redirect_status_counts_as_success(self, make_scenario):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(302)))
        scenario = make_scenario(target="http://service.test/moved")

        assert HttpExecutor(client).execute(_context(scenario)).ok

    @pytest.mark.parametrize(
        "error, kind",
        [
            (httpx.ConnectError("refused"), FailureKind.CONNECTION_ERROR),
            (httpx.ReadTimeout("slow"), FailureKind.TIMEOUT),
            (httpx.RemoteProtocolError("garbled"), FailureKind.PROTOCOL_ERROR),
        ],
    )
    def test_transport_failures_are_classified(self, make_scenario, error, kind):
        def handler(request):
            raise error

        client = httpx.Client(transport=httpx.MockTransport(handler))
        scenario = make_scenario(target="http://service.test/")

        sample = HttpExecutor(client).execute(_context(scenario))

        assert sample.failure is kind

    def test_unreachable_host_is_a_connection_failure(self, make_scenario):
        scenario = make_scenario(target="http://127.0.0.1:1/", timeout_seconds=2.0)
        executor = HttpExecutor.for_scenario(scenario)
        try:
            sample = executor.execute(_context(scenario))
        finally:
            executor.close()

        assert sample.failure in (FailureKind.CONNECTION_ERROR, FailureKind.TIMEOUT)


def test_executor_table_selects_by_protocol(make_scenario, sqlite_pool):
    http = create_executor(make_scenario(protocol=Protocol.HTTP))
    sql = create_executor(make_scenario(protocol=Protocol.SQL, target="SELECT 1"), sqlite_pool)
    try:
        assert isinstance(http, HttpExecutor)
        assert isinstance(sql, SqlExecutor)
    finally:
        http.close()


def test_sql_executor_requires_a_pool(make_scenario):
    with pytest.raises(WorkloadConfigError):
        create_executor(make_scenario(protocol=Protocol.SQL, target="SELECT 1"))


_SLOW_COUNT = (
    "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < {limit}) "
    "SELECT COUNT(*) FROM c"
)


def test_statement_exceeding_scenario_timeout_is_cancelled(make_scenario, sqlite_pool):
    slow = make_scenario(
        protocol=Protocol.SQL, target=_SLOW_COUNT.format(limit=500_000_000), timeout_seconds=0.05
    )

    sample = SqlExecutor(sqlite_pool).execute(_context(slow))

    assert sample.failure is FailureKind.TIMEOUT
    assert sample.latency_s < 2.0
    assert sqlite_pool.engine.pool.checkedout() == 0

    # The interrupt is scoped to the attempt: the reused connection runs normally afterwards.
    moderate = make_scenario(protocol=Protocol.SQL, target=_SLOW_COUNT.format(limit=20_000))
    assert SqlExecutor(sqlite_pool).execute(_context(moderate)).ok


def test_statement_within_scenario_timeout_succeeds(make_scenario, sqlite_pool):
    scenario = make_scenario(
        protocol=Protocol.SQL,
        target="SELECT name FROM items WHERE id = ?",
        parameters=(BindParameter(1, SqlType.INTEGER),),
        timeout_seconds=5.0,
    )

    assert SqlExecutor(sqlite_pool).execute(_context(scenario)).ok


@pytest.mark.parametrize("status", [101, 199, 404, 503])
def test_statuses_outside_success_range_are_protocol_failures(make_scenario, status):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
    scenario = make_scenario(target="http://service.test/")

    sample = HttpExecutor(client).execute(_context(scenario))

    assert sample.failure is FailureKind.PROTOCOL_ERROR
    assert sample.detail == f"HTTP {status}"
