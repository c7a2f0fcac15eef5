from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from typing import Any

from meshsplit.src.health import start_health_server
from meshsplit.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str, str | None]:
    """Make a GET request and return (status_code, body, content_type)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode(), response.headers["Content-Type"]
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode(), exc.headers["Content-Type"]


class TestHealthServer:
    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.status: dict[str, Any] = {}
        self.server = start_health_server(
            ready=self.ready,
            port=0,
            status_provider=lambda: self.status,
            host="127.0.0.1",
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body, _ = _get(f"{self.base_url}/healthz")
        assert (status, body) == (200, "ok")

    def test_readyz_follows_ready_event(self) -> None:
        assert _get(f"{self.base_url}/readyz")[:2] == (503, "not ready")

        self.ready.set()
        assert _get(f"{self.base_url}/readyz")[:2] == (200, "ready")

        self.ready.clear()
        assert _get(f"{self.base_url}/readyz")[0] == 503

    def test_metrics_exposes_controller_series(self) -> None:
        METRICS.watch_errors_total.inc()

        status, body, content_type = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert content_type is not None and content_type.startswith("text/plain")
        assert "meshsplit_watch_errors_total" in body

    def test_status_reports_provider_snapshot(self) -> None:
        self.status["web"] = {"outcome": "synced", "routes": 2}
        self.ready.set()

        status, body, content_type = _get(f"{self.base_url}/status")

        assert status == 200
        assert content_type == "application/json"
        assert json.loads(body) == {
            "ready": True,
            "services": {"web": {"outcome": "synced", "routes": 2}},
        }

    def test_unknown_path_returns_404(self) -> None:
        assert _get(f"{self.base_url}/nope")[0] == 404


def test_status_without_provider_is_empty() -> None:
    server = start_health_server(ready=threading.Event(), port=0, host="127.0.0.1")
    try:
        status, body, _ = _get(f"http://127.0.0.1:{server.server_address[1]}/status")
    finally:
        server.shutdown()

    assert status == 200
    assert json.loads(body) == {"ready": False, "services": {}}
