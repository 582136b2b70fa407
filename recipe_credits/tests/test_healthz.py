from unittest.mock import patch


def test_healthz_ok(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_ok(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_database_unreachable(client):
    with patch("recipe_credits.api.health.get_engine", side_effect=RuntimeError("no db")):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json() == {"status": "error", "detail": "database unreachable"}
