from fastapi.testclient import TestClient


def test_healthz_ok(anonymous_client: TestClient) -> None:
    response = anonymous_client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
