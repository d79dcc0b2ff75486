from fastapi.testclient import TestClient

from discovery.main import app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root() -> None:
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_startup_bootstraps_search_indexes(monkeypatch) -> None:
    calls: list[dict] = []

    async def record_bootstrap(index, store, **kwargs) -> bool:
        calls.append({"index": index, **kwargs})
        return False

    monkeypatch.setattr("discovery.main.bootstrap_search_indexes", record_bootstrap)

    with TestClient(app) as client:
        assert client.get("/healthz").status_code == 200

    assert len(calls) == 1
    assert calls[0]["sync"] is False
    assert calls[0]["batch_size"] > 0
