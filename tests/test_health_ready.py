def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["trace_id"]


def test_ready_checks_database(client):
    response = client.get("/ready", headers={"X-Trace-Id": "ready-probe"})
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "trace_id": "ready-probe"}
    assert response.headers["X-Trace-Id"] == "ready-probe"
