import pytest

from gatekeeper import GatewayConfig, create_app
from gatekeeper.bindings import ExecutionResult


class RecordingBinding:
    kind = "fake"

    def __init__(self, name="main", rows=None, error=None):
        self.name = name
        self.rows = rows if rows is not None else []
        self.error = error
        self.calls = []

    def execute(self, statement, parameters, timeout):
        self.calls.append((statement, parameters, timeout))
        if self.error is not None:
            raise self.error
        return ExecutionResult(rows=self.rows, columns=tuple(self.rows[0]) if self.rows else (), rows_read=len(self.rows))


@pytest.fixture
def binding():
    return RecordingBinding(rows=[{"id": 1, "name": "widget"}, {"id": 2, "name": "gadget"}])


@pytest.fixture
def make_client():
    def _make(*bindings, **overrides):
        table = {b.name: b for b in bindings}
        config = GatewayConfig(bindings=table, **overrides)
        return create_app(config).test_client()
    return _make


@pytest.fixture
def client(make_client, binding):
    return make_client(binding)
