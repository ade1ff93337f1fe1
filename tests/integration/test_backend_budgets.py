import httpx

from coldgate.testing.fake_budgets import FakeBudgets


async def test_exhausted_backend_returns_429(budgeted_client):
    """Test: a request routed to a backend with an empty budget is refused."""
    resp = await budgeted_client.get("/api/users/admins")

    assert resp.status_code == 429
    data = resp.json()
    assert data["error"] == "Backend budget exhausted"
    assert data["message"]
    assert data["service"] == "users"
    assert resp.headers["retry-after"] == "3"


async def test_other_backends_keep_their_budget(budgeted_client):
    """Test: an empty users budget does not affect notifications."""
    resp = await budgeted_client.get("/api/notifications/u1")

    assert resp.status_code == 200
    assert resp.json()["user_id"] == "u1"
    assert resp.headers["x-budget-remaining"] == "7"


async def test_budget_is_keyed_by_service_not_prefix(budgeted_client):
    budgets = budgeted_client._transport.app.state.budgets

    await budgeted_client.get("/api/user-info/tok-1")
    await budgeted_client.post("/api/auth/login", json={"email": "ada@example.com"})

    assert budgets.spent == ["auth", "auth"]


async def test_unrouted_requests_spend_nothing(budgeted_client):
    budgets = budgeted_client._transport.app.state.budgets

    health = await budgeted_client.get("/health")
    missing = await budgeted_client.get("/nowhere")

    assert health.status_code == 200
    assert missing.status_code == 404
    assert budgets.spent == []


async def test_no_budgets_means_no_limit(gateway_client):
    resp = await gateway_client.get("/api/notifications/u1")

    assert resp.status_code == 200
    assert 'x-budget-remaining' not in resp.headers


async def test_exhausted_request_never_reaches_backend(mock_gateway):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    async with mock_gateway(handler) as client:
        client._transport.app.state.budgets = FakeBudgets(exhausted={"users"})
        resp = await client.get("/api/users/admins")

    assert resp.status_code == 429
    assert calls == []


async def test_retries_spend_a_single_token(mock_gateway):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"ok": True})

    async with mock_gateway(handler) as client:
        budgets = FakeBudgets()
        client._transport.app.state.budgets = budgets
        resp = await client.get("/api/users/admins")

    assert resp.status_code == 200
    assert len(attempts) == 3
    assert budgets.spent == ["users"]
