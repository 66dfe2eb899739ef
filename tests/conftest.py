import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import sqlalchemy as sa

from loadshaper.pool import ConnectionPool
from loadshaper.scenario import DatabaseSettings, Protocol, ScenarioSpec, StepSchedule


def build_scenario(
    name: str = "scenario",
    protocol: Protocol = Protocol.HTTP,
    target: str = "http://127.0.0.1:1/",
    rps_steps=(10.0,),
    ramp_up_seconds: float = 0.0,
    step_duration_seconds: float = 1.0,
    **kwargs,
) -> ScenarioSpec:
    return ScenarioSpec(
        name=name,
        protocol=protocol,
        target=target,
        schedule=StepSchedule(tuple(rps_steps), ramp_up_seconds, step_duration_seconds),
        **kwargs,
    )


@pytest.fixture
def make_scenario():
    """Factory for scenarios with short, test-friendly schedules."""
    return build_scenario


class _Handler(BaseHTTPRequestHandler):
    def _respond(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        self.server.requests.append(
            {
                "method": self.command,
                "path": self.path,
                "body": body.decode("utf-8"),
                "content_type": self.headers.get("Content-Type"),
            }
        )
        status = 500 if self.path.startswith("/fail") else 200
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", "2")
        self.end_headers()
        self.wfile.write(b"ok")

    do_GET = _respond
    do_POST = _respond
    do_PUT = _respond

    def log_message(self, format, *args):  # noqa: A002
        return


@pytest.fixture
def http_server():
    """Local threaded HTTP server; paths under /fail answer 500."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.daemon_threads = True
    server.requests = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    server.base_url = f"http://{host}:{port}"
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def sqlite_settings(tmp_path):
    """File-backed SQLite database with an ``items`` table."""
    url = f"sqlite:///{tmp_path / 'loadshaper.db'}"
    engine = sa.create_engine(url)
    with engine.begin() as connection:
        connection.execute(
            sa.text("CREATE TABLE items (id INTEGER, name VARCHAR(50), created DATE)")
        )
        connection.execute(
            sa.text("INSERT INTO items (id, name, created) VALUES (1, 'seed', '2024-01-01')")
        )
    engine.dispose()
    return DatabaseSettings(url=url, pool_size=4, max_overflow=0, pool_timeout_seconds=5.0)


@pytest.fixture
def sqlite_pool(sqlite_settings):
    pool = ConnectionPool.from_settings(sqlite_settings)
    yield pool
    pool.dispose()
