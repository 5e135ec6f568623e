import pytest
from fastapi.testclient import TestClient

from backend.main import app
from backend.routes.deps import get_gateway, get_notifier
from backend.services.errors import ExecutionError
from backend.services.gateway import Gateway
from backend.services.notifier import ERROR_MESSAGE, NO_DATA_MESSAGE, REFUSAL_MESSAGE, DeliveryError
from backend.services.rate_limiter import RateLimiter

client = TestClient(app)


class _RecordingNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send_text(self, to, message):
        self.sent.append((to, message))
        if self.fail:
            raise DeliveryError("down")


class _Store:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error

    def execute(self, sql, params=()):
        if self.error:
            raise self.error
        return list(self.rows)


class _Generator:
    def __init__(self, response):
        self.response = response

    def generate(self, prompt):
        return self.response


@pytest.fixture()
def wire():
    notifier = _RecordingNotifier()

    def _wire(gateway, notify=notifier):
        app.dependency_overrides[get_gateway] = lambda: gateway
        app.dependency_overrides[get_notifier] = lambda: notify
        return notify

    yield _wire
    app.dependency_overrides.clear()


def test_health():
    assert client.get("/api/health").json() == {"status": "ok"}


def test_blank_phone_or_text_is_rejected(wire):
    wire(Gateway(executor=_Store()))
    assert client.post("/api/messages", json={"phone": "", "text": "show my orders"}).status_code == 400
    assert client.post("/api/messages", json={"phone": "42", "text": "   "}).status_code == 400


def test_successful_request_returns_rows_and_notifies(wire):
    notifier = wire(Gateway(executor=_Store(rows=[{"id": 1, "amount": 9.5}])))
    resp = client.post("/api/messages", json={"phone": "42", "text": "show my orders"},
                       headers={"x-request-id": "req-1"})
    assert resp.status_code == 200
    assert resp.headers["x-request-id"] == "req-1"
    body = resp.json()
    assert body == {"success": True, "source": "pattern", "row_count": 1, "rows": [{"id": 1, "amount": 9.5}]}
    assert notifier.sent == [("42", "id: 1 | amount: 9.5")]


def test_empty_result_sends_no_data_message(wire):
    notifier = wire(Gateway(executor=_Store(rows=[])))
    assert client.post("/api/messages", json={"phone": "42", "text": "show my orders"}).status_code == 200
    assert notifier.sent == [("42", NO_DATA_MESSAGE)]


def test_rate_limited_returns_429_with_retry_after(wire):
    wire(Gateway(executor=_Store(), rate_limiter=RateLimiter(per_minute=1, per_hour=10)))
    client.post("/api/messages", json={"phone": "42", "text": "show my orders"})
    resp = client.post("/api/messages", json={"phone": "42", "text": "show my orders"})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.json()["retry_after_seconds"] > 0


def test_rejected_sql_is_a_safe_refusal(wire):
    notifier = wire(Gateway(executor=_Store(), generator=_Generator("DROP TABLE orders")))
    resp = client.post("/api/messages", json={"phone": "42", "text": "what did I buy"})
    assert resp.status_code == 422
    assert notifier.sent == [("42", REFUSAL_MESSAGE)]


def test_execution_error_is_a_generic_failure(wire):
    notifier = wire(Gateway(executor=_Store(error=ExecutionError("Database error: boom"))))
    resp = client.post("/api/messages", json={"phone": "42", "text": "show my orders"})
    assert resp.status_code == 502
    assert "boom" not in resp.text
    assert notifier.sent == [("42", ERROR_MESSAGE)]


def test_delivery_failure_does_not_change_the_result(wire):
    wire(Gateway(executor=_Store(rows=[{"id": 1}])), notify=_RecordingNotifier(fail=True))
    resp = client.post("/api/messages", json={"phone": "42", "text": "show my orders"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
