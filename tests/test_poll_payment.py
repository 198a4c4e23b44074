import httpx

from scripts.poll_payment import poll_status, start_payment


BASE = "http://collospot.test"


def _client(statuses):
    calls = []

    def _handler(request):
        calls.append(request.url.path)
        if request.method == "POST":
            return httpx.Response(200, json={"correlation_id": "ws_CO_1", "customer_message": "Check your phone"})
        status = statuses[min(len(calls) - 1, len(statuses) - 1)]
        if isinstance(status, int):
            return httpx.Response(status, json={"detail": "busy"})
        body = {"status": status, "amount": "100.00", "session_token": "tok" if status == "completed" else None}
        return httpx.Response(200, json=body)

    return httpx.Client(transport=httpx.MockTransport(_handler)), calls


def test_start_payment_returns_correlation_id():
    client, calls = _client([])
    assert start_payment(client, BASE, "/api/v1", "0712345678", 1, "100") == "ws_CO_1"
    assert calls == ["/api/v1/public/payment"]


def test_poll_stops_at_terminal_status():
    client, calls = _client(["pending", 503, "pending", "completed"])
    sleeps = []

    result = poll_status(client, BASE, "/api/v1", "ws_CO_1", interval=2.0, sleep=sleeps.append)

    assert result.outcome == "completed"
    assert result.session_token == "tok"
    assert result.attempts == 4
    assert sleeps == [2.0, 2.0, 2.0]


def test_poll_reports_failure():
    client, _ = _client(["failed"])
    result = poll_status(client, BASE, "/api/v1", "ws_CO_1", sleep=lambda s: None)
    assert result.outcome == "failed"
    assert result.session_token is None


def test_poll_gives_up_with_timeout_not_failure():
    client, calls = _client(["pending"])

    result = poll_status(client, BASE, "/api/v1", "ws_CO_1", sleep=lambda s: None)

    assert result.outcome == "timeout"
    assert result.attempts == 30
    assert len(calls) == 30
