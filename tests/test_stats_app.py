import pytest
from fastapi.testclient import TestClient

from mlcproxy.config.settings import PathSettings
from mlcproxy.stats.app import create_stats_app, preferred_language


@pytest.fixture
def client(settings, aggregator) -> TestClient:
    aggregator.log_request("10.0.0.1", "GET", "example.com", "/", 200, 10, 90)
    return TestClient(create_stats_app(aggregator, settings))


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, "de"),
        ("", "de"),
        ("en-US,en;q=0.9", "en"),
        ("fr;q=0.8", "fr"),
        ("DE-at", "de"),
    ],
)
def test_preferred_language(header, expected):
    assert preferred_language(header) == expected


@pytest.mark.parametrize("path", ["/api/stats", "/stat/api/stats"])
def test_stats_api(client, path):
    response = client.get(path)

    assert response.status_code == 200
    body = response.json()
    assert body["total_requests"] == 1
    assert body["client_stats"][0]["bytes_total"] == 100


def test_index_defaults_to_german(client):
    response = client.get("/stat")

    assert response.status_code == 200
    assert "MLCProxy Statistik" in response.text
    assert 'data-api-url="/stat/api/stats"' in response.text


def test_index_falls_back_to_default_page(client):
    response = client.get("/", headers={"Accept-Language": "en-GB,en;q=0.8"})

    assert response.status_code == 200
    assert '<html lang="en">' in response.text


@pytest.mark.parametrize("path", ["/stat/styles.css", "/styles.css", "/stat/script.js", "/favicon.ico"])
def test_assets(client, path):
    response = client.get(path)

    assert response.status_code == 200
    assert response.content


def test_favicon_is_svg(client):
    assert client.get("/stat/favicon.ico").headers["content-type"].startswith("image/svg+xml")


def test_unknown_asset_is_404(client):
    assert client.get("/stat/secrets.txt").status_code == 404
    assert client.get("/index.html").status_code == 404


def test_missing_page_is_404(settings, aggregator, tmp_path):
    settings.paths = PathSettings(static_dir=tmp_path)
    client = TestClient(create_stats_app(aggregator, settings))

    assert client.get("/stat").status_code == 404
