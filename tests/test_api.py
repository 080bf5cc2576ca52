"""
Tests for the gateway HTTP endpoints
"""
import base64
import os
import sys
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from api import GatewayServices, SAMPLE_STREAM_URL, app
from cache_store import CacheStore
from config import settings
from errors import BlackoutError, ConfigurationError
from http_client import UpstreamClient
from multiview import MultiviewComposer
from offsets import ContentOffsets, OffsetPair, OffsetTable
from stores import CredentialStore, PreferencesStore, SessionStore


STREAM_URL = "https://cdn.example.com/path/master.m3u8"
VARIANT_URL = "https://cdn.example.com/path/720p60.m3u8"
KEY = b"0123456789abcdef"
IV = b"\x00" * 15 + b"\x01"

MASTER = """#EXTM3U
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aac",NAME="English",AUTOSELECT=YES,DEFAULT=YES,URI="audio/eng.m3u8"
#EXT-X-STREAM-INF:BANDWIDTH=6600000,RESOLUTION=1280x720,FRAME-RATE=59.94,AUDIO="aac"
720p60.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=960x540,FRAME-RATE=29.97,AUDIO="aac"
540.m3u8
"""

VARIANT = """#EXTM3U
#EXT-X-TARGETDURATION:5
#EXT-X-MEDIA-SEQUENCE:1
#EXT-X-KEY:METHOD=AES-128,URI="https://keys.example.com/k1"
#EXTINF:5.0,
seg1.ts
#EXTINF:5.0,
seg2.ts
#EXTINF:5.0,
seg3.ts
"""


@pytest.fixture
def upstream():
    """URL -> body served by the mocked upstream"""
    return {
        STREAM_URL: MASTER.encode(),
        SAMPLE_STREAM_URL: MASTER.encode(),
        VARIANT_URL: VARIANT.encode(),
        "https://keys.example.com/k1": KEY,
        "https://cdn.example.com/path/seg1.ts": AES.new(KEY, AES.MODE_CBC, IV).encrypt(pad(b"segment-one", 16)),
    }


@pytest.fixture
def services(tmp_path, upstream):
    def handler(request):
        body = upstream.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    client = UpstreamClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
                            attempts=1, retry_delay=0)
    return GatewayServices(
        client=client,
        cache=CacheStore(str(tmp_path / "cache")),
        session=SessionStore(str(tmp_path / "session.json")),
        credentials=CredentialStore(str(tmp_path / "credentials.json"), "fan", "secret"),
        preferences=PreferencesStore(str(tmp_path / "preferences.json")),
        composer=MultiviewComposer(output_dir=str(tmp_path / "multiview"), restart_delay=0),
    )


@pytest.fixture
def client(services):
    app.state.services = services
    yield TestClient(app)
    app.state.services = None


@pytest.fixture
def protected():
    with patch.object(settings, "PAGE_USERNAME", "admin"), patch.object(settings, "PAGE_PASSWORD", "hunter2"):
        yield


class TestStream:
    def test_team_stream_is_resolved_and_rewritten(self, client, services):
        services.data.find_media = AsyncMock(return_value={"mediaId": "m-1", "contentId": "c-1"})
        services.tokens.resolve_stream_url = AsyncMock(return_value=STREAM_URL)

        response = client.get("/stream.m3u8", params={"team": "NYY", "resolution": "best"})

        assert response.status_code == 200
        assert response.headers["content-type"].lower().startswith("audio/x-mpegurl")
        assert "playlist?url=https%3A%2F%2Fcdn.example.com%2Fpath%2F720p60.m3u8" in response.text
        assert "540.m3u8" not in response.text
        services.tokens.resolve_stream_url.assert_awaited_once_with("m-1", "c-1")

    def test_skip_request_computes_offsets(self, client, services):
        services.data.find_media = AsyncMock(return_value={"mediaId": "m-1", "contentId": "c-1"})
        services.tokens.resolve_stream_url = AsyncMock(return_value=STREAM_URL)
        services.offsets.compute = AsyncMock(return_value=None)

        response = client.get("/stream.m3u8", params={"team": "NYY", "skip": "breaks", "skip_adjust": "-5"})

        assert "skip=breaks&contentId=c-1" in response.text
        services.offsets.compute.assert_awaited_once_with("c-1", ["breaks"], -5.0)

    def test_no_selector_serves_sample(self, client):
        response = client.get("/stream.m3u8")
        assert response.status_code == 200
        assert response.text.count("#EXT-X-STREAM-INF") == 2

    def test_blackout_gives_empty_body(self, client, services):
        services.tokens.resolve_stream_url = AsyncMock(side_effect=BlackoutError("m-1"))
        response = client.get("/stream.m3u8", params={"mediaId": "m-1"})
        assert response.status_code == 200
        assert response.text == ""

    def test_missing_media_gives_empty_body(self, client, services):
        services.data.find_media = AsyncMock(return_value=None)
        response = client.get("/stream.m3u8", params={"team": "NYY"})
        assert response.status_code == 200
        assert response.text == ""

    def test_configuration_error_halts(self, client, services):
        services.tokens.resolve_stream_url = AsyncMock(side_effect=ConfigurationError("missing xApiKey"))
        with patch("api.halt") as halt:
            response = client.get("/stream.m3u8", params={"mediaId": "m-1"})
        assert response.status_code == 200
        halt.assert_called_once()

    def test_big_inning_on_air(self, client, services):
        services.data.get_big_inning_url = AsyncMock(return_value="https://dapi.example.com/big-inning/playback")
        services.tokens.resolve_big_inning_stream_url = AsyncMock(return_value=STREAM_URL)

        response = client.get("/stream.m3u8", params={"type": "biginning", "resolution": "720p60"})

        assert "playlist?url=https%3A%2F%2Fcdn.example.com%2Fpath%2F720p60.m3u8" in response.text
        services.tokens.resolve_big_inning_stream_url.assert_awaited_once_with(
            "https://dapi.example.com/big-inning/playback")

    def test_big_inning_off_air_gives_empty_body(self, client, services):
        services.data.get_big_inning_url = AsyncMock(return_value=None)
        response = client.get("/stream.m3u8", params={"type": "BIGINNING"})
        assert response.status_code == 200
        assert response.text == ""

    def test_highlight_source_is_served_directly(self, client, services):
        services.tokens.resolve_stream_url = AsyncMock()
        response = client.get("/stream.m3u8", params={"highlight_src": STREAM_URL, "resolution": "540p"})
        assert "540.m3u8" in response.text
        services.tokens.resolve_stream_url.assert_not_awaited()


class TestRequestErrors:
    def test_bad_game_number(self, client, services):
        services.data.find_media = AsyncMock()
        response = client.get("/stream.m3u8", params={"team": "NYY", "game": "second"})
        assert response.status_code == 200
        assert response.text == ""
        services.data.find_media.assert_not_awaited()

    def test_bad_skip_adjust(self, client):
        response = client.get("/stream.m3u8", params={"mediaId": "m-1", "skip_adjust": "later"})
        assert response.status_code == 200
        assert response.text == ""

    def test_missing_playlist_url(self, client):
        response = client.get("/playlist")
        assert response.status_code == 200
        assert response.text == ""

    def test_missing_segment_url(self, client):
        response = client.get("/ts")
        assert response.status_code == 200
        assert response.content == b""

    def test_bad_audio_seek(self, client, services):
        services.composer.start = AsyncMock(return_value="started")
        response = client.get("/multiview", params={"streams": "http://a/1.m3u8", "audio_url_seek": "soon"})
        assert response.text == "multiview request error, check log"
        services.composer.start.assert_not_awaited()

    def test_bad_channel_number(self, client, services):
        services.data.get_weeks_data = AsyncMock(return_value={"dates": []})
        response = client.get("/channels.m3u", params={"startingChannelNumber": "one"})
        assert response.status_code == 200
        assert response.text == ""

    def test_missing_highlight_game(self, client):
        response = client.get("/highlights", params={"gameDate": "2024-06-01"})
        assert response.status_code == 200
        assert response.json() == []


class TestPlaylistAndSegments:
    def test_variant_playlist_routes_segments(self, client):
        response = client.get("/playlist", params={"url": VARIANT_URL})
        assert response.status_code == 200
        assert "#EXT-X-KEY" not in response.text
        assert response.text.count("ts?url=") == 3

    def test_variant_playlist_uses_stored_offsets(self, client, services):
        offsets = ContentOffsets(OffsetTable([OffsetPair(0)]), [OffsetPair(8, 12), OffsetPair(100, 200)])
        services.offsets._tables.put("c-1", offsets)
        response = client.get("/playlist", params={"url": VARIANT_URL, "skip": "breaks", "contentId": "c-1"})
        assert response.text.count("ts?url=") == 1
        assert "#EXT-X-DISCONTINUITY" in response.text

    def test_upstream_failure_gives_empty_body(self, client):
        response = client.get("/playlist", params={"url": "https://cdn.example.com/missing.m3u8"})
        assert response.status_code == 200
        assert response.text == ""

    def test_segment_is_decrypted(self, client):
        response = client.get("/ts", params={
            "url": "https://cdn.example.com/path/seg1.ts",
            "key": "https://keys.example.com/k1",
            "iv": IV.hex(),
        })
        assert response.status_code == 200
        assert response.content == b"segment-one"
        assert response.headers["content-type"] == "video/mp2t"


class TestMultiview:
    def test_no_streams_stops(self, client):
        response = client.get("/multiview")
        assert response.text == "stopped"

    def test_streams_start_composer(self, client, services):
        services.composer.start = AsyncMock(return_value="started")

        response = client.get("/multiview", params=[("streams", "http://a/1.m3u8,http://a/2.m3u8"),
                                                    ("sync", "0,1.5"), ("dvr", "true")])

        assert response.text == "started"
        spec = services.composer.start.await_args.args[0]
        assert spec.streams == ["http://a/1.m3u8", "http://a/2.m3u8"]
        assert spec.sync == [0.0, 1.5]
        assert spec.dvr is True
        assert services.preferences.multiview_path == "/multiview/master.m3u8"

    def test_bad_sync_is_reported(self, client, services):
        services.composer.start = AsyncMock(return_value="started")
        response = client.get("/multiview", params={"streams": "http://a/1.m3u8", "sync": "soon"})
        assert response.text == "multiview request error, check log"
        services.composer.start.assert_not_awaited()

    def test_status(self, client):
        response = client.get("/multiview/status")
        assert response.status_code == 200
        assert response.json()["status"] == "idle"
        assert response.json()["ready"] is False


class TestListings:
    def test_channels(self, client, services):
        services.data.get_weeks_data = AsyncMock(return_value={"dates": [{"date": "2024-06-01", "games": [{
            "gameDate": "2024-06-01T23:05:00Z",
            "status": {"abstractGameState": "Preview"},
            "teams": {"away": {"team": {"abbreviation": "BOS"}}, "home": {"team": {"abbreviation": "NYY"}}},
            "content": {"media": {"epg": [{"title": "MLBTV", "items": [
                {"mediaFeedType": "HOME", "mediaFeedSubType": 147}]}]}},
        }]}]})

        response = client.get("/channels.m3u")

        assert response.status_code == 200
        assert "http://testserver/stream.m3u8?team=NYY&mediaType=Video&resolution=720p60" in response.text

    def test_highlights(self, client, services):
        services.data.get_highlights_data = AsyncMock(return_value=[{
            "headline": "Homer",
            "date": "2024-06-01T23:40:00Z",
            "playbacks": [{"url": "https://clips/h.mp4"}, {"url": "https://clips/h.m3u8"}],
        }])
        response = client.get("/highlights", params={"gamePk": "745000", "gameDate": "2024-06-01"})
        assert response.json()[0]["url"] == "https://clips/h.m3u8"

    def test_clear_session(self, client, services):
        services.session.add_blackout("m-1")
        response = client.post("/clear_session")
        assert response.json() == {"status": "cleared"}
        assert not services.tokens.is_blacked_out("m-1")


class TestAccessGuard:
    def test_rejected_without_credentials(self, client, protected):
        response = client.get("/multiview/status")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Basic"

    def test_basic_credentials(self, client, protected):
        token = base64.b64encode(b"admin:hunter2").decode()
        response = client.get("/multiview/status", headers={"Authorization": f"Basic {token}"})
        assert response.status_code == 200

    def test_wrong_password(self, client, protected):
        token = base64.b64encode(b"admin:nope").decode()
        response = client.get("/multiview/status", headers={"Authorization": f"Basic {token}"})
        assert response.status_code == 401

    def test_content_protect_key(self, client, services, protected):
        key = services.session.content_protect()
        response = client.get("/multiview/status", params={"content_protect": key})
        assert response.status_code == 200

    def test_rewritten_urls_carry_key(self, client, services, protected):
        key = services.session.content_protect()
        response = client.get("/playlist", params={"url": VARIANT_URL, "content_protect": key})
        assert f"&content_protect={key}" in response.text

    def test_health_is_open(self, client, protected):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_non_ascii_content_protect_is_rejected(self, client, protected):
        response = client.get("/multiview/status", params={"content_protect": "é"})
        assert response.status_code == 401

    def test_non_ascii_basic_credentials_are_rejected(self, client, protected):
        token = base64.b64encode("admin:pässword".encode("utf-8")).decode()
        response = client.get("/multiview/status", headers={"Authorization": f"Basic {token}"})
        assert response.status_code == 401
