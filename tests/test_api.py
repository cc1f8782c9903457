# Add src to path first
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import httpx
import pytest
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from unittest.mock import Mock, AsyncMock, patch

from api import app
from config import settings
from source_manager import SourceManager

A = "http://a.example.com/live.mp3"
B = "http://b.example.com/live.mp3"
PROBE_RANGE = "bytes=0-8191"


async def audio_chunks():
    yield b"ID3"
    yield b"frame-1"
    yield b"frame-2"


def make_manager(live_urls, relay_requests=None):
    """SourceManager whose upstreams are served by a mock transport"""

    def handler(request):
        url = str(request.url)
        if url not in live_urls:
            raise httpx.ConnectError("Connection refused")
        if request.headers.get("range") == PROBE_RANGE:
            return httpx.Response(206, content=b"probe-bytes")
        if relay_requests is not None:
            relay_requests.append(request)
        return httpx.Response(200, content=audio_chunks())

    return SourceManager(
        backup_urls=[A, B],
        page_url="https://radio.example.com/",
        transport=httpx.MockTransport(handler)
    )


class TestStaticRoutes:
    """Test the page, preflight and fallback routes"""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_root_serves_index(self, client, tmp_path):
        (tmp_path / "index.html").write_text("<html><body>player</body></html>")

        with patch.object(settings, 'STATIC_DIR', str(tmp_path)):
            response = client.get("/")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["access-control-allow-origin"] == "*"
        assert "player" in response.text

    def test_root_with_query_serves_index(self, client, tmp_path):
        (tmp_path / "index.html").write_text("<html>player</html>")

        with patch.object(settings, 'STATIC_DIR', str(tmp_path)):
            response = client.get("/?utm_source=share")

        assert response.status_code == 200
        assert "player" in response.text

    def test_missing_index(self, client, tmp_path):
        with patch.object(settings, 'STATIC_DIR', str(tmp_path)):
            response = client.get("/")

        assert response.status_code == 404
        assert response.text == "File not found"

    def test_options_preflight(self, client):
        response = client.options("/stream")
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
        assert response.headers["access-control-allow-headers"] == "Content-Type"

    def test_unknown_path(self, client):
        response = client.get("/does-not-exist")
        assert response.status_code == 404
        assert response.text == "Not found"
        assert response.headers["access-control-allow-origin"] == "*"


class TestStreamRoute:
    """Test the relay endpoint"""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    @pytest.mark.parametrize("path", ["/stream", "/stream?t=1712345", "/stream.mp3", "/stream/live"])
    def test_stream_paths_delegate_to_relay(self, client, path):
        mock_manager = Mock()
        mock_manager.relay.handle_stream = AsyncMock(
            return_value=PlainTextResponse("relayed"))

        with patch('api.source_manager', mock_manager):
            response = client.get(path)

        assert response.status_code == 200
        assert response.text == "relayed"
        mock_manager.relay.handle_stream.assert_awaited_once()

    def test_stream_handler_error_returns_500(self, client):
        mock_manager = Mock()
        mock_manager.relay.handle_stream = AsyncMock(side_effect=RuntimeError("boom"))

        with patch('api.source_manager', mock_manager):
            response = client.get("/stream")

        assert response.status_code == 500
        assert response.text == "Error connecting to radio stream"

    def test_stream_relays_audio(self, client):
        relay_requests = []
        manager = make_manager({A, B}, relay_requests)

        with patch('api.source_manager', manager):
            response = client.get("/stream")

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.headers["cache-control"].startswith("no-cache")
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.content == b"ID3frame-1frame-2"
        assert str(relay_requests[0].url) == A
        assert relay_requests[0].headers["range"] == "bytes=0-"

    def test_stream_fails_over_before_relaying(self, client):
        relay_requests = []
        manager = make_manager({B}, relay_requests)

        with patch('api.source_manager', manager):
            response = client.get("/stream")

        assert response.status_code == 200
        assert response.content == b"ID3frame-1frame-2"
        assert str(relay_requests[0].url) == B
        assert manager.state.active_url == B
        assert manager.state.snapshot.backup_cursor == 1

    def test_stream_all_sources_dead(self, client):
        manager = make_manager(set())

        with patch('api.source_manager', manager):
            response = client.get("/stream")
            # A later request is still served from the unverified URL
            second = client.get("/stream")

        assert response.status_code == 500
        assert response.text == "Error connecting to radio stream"
        assert second.status_code == 500
        assert manager.state.active_url == A


class TestLifespan:
    """Test startup and shutdown wiring"""

    def test_lifespan_starts_and_stops_manager(self):
        mock_manager = Mock()
        mock_manager.start = AsyncMock()
        mock_manager.stop = AsyncMock()

        with patch('api.source_manager', mock_manager):
            with TestClient(app):
                mock_manager.start.assert_awaited_once()
            mock_manager.stop.assert_awaited_once()
