"""
Tests for schedule/airing lookups through the cache
"""
import json
import os
import sys
from collections import Counter

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import httpx
import pytest

from cache_store import CacheStore
from errors import MalformedDataError
from expiry import FOREVER, live_date
from http_client import UpstreamClient
from mlb_data import MlbDataService, parse_big_inning_schedule, resolve_date


def _item(feed_type, media_id, content_id, state="MEDIA_ON", **extra):
    return dict(mediaFeedType=feed_type, mediaId=media_id, contentId=content_id, mediaState=state, **extra)


def _schedule(*games, date_string="2024-05-20"):
    return {"dates": [{"date": date_string, "games": list(games)}]}


def _game(away, home, items, state="Preview"):
    return {
        "gamePk": 745000,
        "gameDate": "2024-05-20T23:05:00Z",
        "status": {"abstractGameState": state},
        "teams": {"away": {"team": {"abbreviation": away}}, "home": {"team": {"abbreviation": home}}},
        "content": {"media": {"epg": [{"title": "MLBTV", "items": items}]}},
    }


class Recorder:
    def __init__(self, routes=None):
        self.calls = Counter()
        self.routes = routes or {}

    def __call__(self, request):
        self.calls[request.url.path] += 1
        for path, payload in self.routes.items():
            if request.url.path.startswith(path):
                result = payload(request) if callable(payload) else payload
                if isinstance(result, httpx.Response):
                    return result
                return httpx.Response(200, json=result)
        return httpx.Response(404)


def make_service(tmp_path, recorder):
    client = UpstreamClient(client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
                            attempts=1, retry_delay=0)
    return MlbDataService(client, CacheStore(str(tmp_path / "cache")))


@pytest.mark.asyncio
async def test_day_data_is_cached(tmp_path):
    recorder = Recorder({"/bdfed/transform-mlb-scoreboard": _schedule(date_string="2020-05-20")})
    service = make_service(tmp_path, recorder)

    first = await service.get_day_data("2020-05-20")
    second = await service.get_day_data("2020-05-20")

    assert first == second
    assert recorder.calls["/bdfed/transform-mlb-scoreboard"] == 1


@pytest.mark.asyncio
async def test_team_day_data_uses_team_key(tmp_path):
    recorder = Recorder({"/api/v1/schedule": _schedule()})
    service = make_service(tmp_path, recorder)

    await service.get_day_data("2020-05-20", "nyy")
    assert service.cache.get("NYY2020-05-20") is not None


@pytest.mark.asyncio
async def test_unknown_team_is_rejected(tmp_path):
    service = make_service(tmp_path, Recorder())
    with pytest.raises(MalformedDataError):
        await service.get_day_data("2020-05-20", "XXX")


class TestFindMedia:
    @pytest.fixture
    def service(self, tmp_path):
        service = make_service(tmp_path, Recorder())
        game = _game("BOS", "NYY", [
            _item("HOME", "m-home", "c-home"),
            _item("AWAY", "m-away", "c-away"),
            _item("NATIONAL", "m-nat", "c-nat"),
            _item("HOME", "m-fox", "c-fox", foxAuthRequired=True),
        ])
        service.cache.put("2024-05-20", _schedule(game), FOREVER)
        return service

    @pytest.mark.asyncio
    async def test_home_team_feed(self, service):
        media = await service.find_media("NYY", media_date="2024-05-20")
        assert media == {"mediaId": "m-home", "contentId": "c-home"}

    @pytest.mark.asyncio
    async def test_away_team_feed(self, service):
        media = await service.find_media("bos", media_date="2024-05-20")
        assert media == {"mediaId": "m-away", "contentId": "c-away"}

    @pytest.mark.asyncio
    async def test_national_feed(self, service):
        media = await service.find_media("NATIONAL.1", media_date="2024-05-20")
        assert media == {"mediaId": "m-nat", "contentId": "c-nat"}

    @pytest.mark.asyncio
    async def test_missing_team(self, service):
        assert await service.find_media("LAD", media_date="2024-05-20") is None


@pytest.mark.asyncio
async def test_live_feed_not_yet_available(tmp_path):
    service = make_service(tmp_path, Recorder())
    game = _game("BOS", "NYY", [_item("HOME", "m-home", "c-home", state="MEDIA_OFF")])
    service.cache.put(live_date(), _schedule(game, date_string=live_date()), FOREVER)

    assert await service.find_media("NYY") is None


@pytest.mark.asyncio
async def test_companion_airing_replaces_sparse_milestones(tmp_path):
    own = {
        "contentId": "c-home",
        "mediaId": "m-home",
        "partnerProgramId": "745000",
        "milestones": [{
            "milestoneType": "BROADCAST_START",
            "milestoneTime": [{"type": "offset", "start": 100},
                              {"startDatetime": "2024-05-20T23:00:00Z"}],
        }],
    }
    companion = {
        "contentId": "c-away",
        "milestones": [
            {"milestoneType": "BROADCAST_START",
             "milestoneTime": [{"type": "offset", "start": 50}, {"startDatetime": "2024-05-20T23:00:00Z"}]},
            {"milestoneType": "INNING_START",
             "milestoneTime": [{"type": "offset", "start": 650}, {"startDatetime": "2024-05-20T23:10:00Z"}]},
        ],
    }

    def airings(request):
        variables = json.loads(request.url.params["variables"])
        assert variables == {"partnerProgramIds": ["745000"]}
        return {"data": {"Airings": [own, companion]}}

    recorder = Recorder({"/svc/search": airings})
    service = make_service(tmp_path, recorder)

    data = await service.get_airings_data("c-home", "745000")

    merged = data["data"]["Airings"]
    assert len(merged) == 1
    assert merged[0]["mediaId"] == "m-home"
    # Own stream zero is 50s earlier than the companion's, so offsets shift by +50
    assert [m["milestoneTime"][0]["start"] for m in merged[0]["milestones"]] == [100, 700]
    assert service.cache.get("c-home") == data


@pytest.mark.asyncio
async def test_game_airings_narrowed_without_companion_milestones(tmp_path):
    away = {"contentId": "c-away", "mediaId": "m-away", "partnerProgramId": "745000", "milestones": []}
    own = {
        "contentId": "c-home",
        "mediaId": "m-home",
        "partnerProgramId": "745000",
        "milestones": [{
            "milestoneType": "BROADCAST_START",
            "milestoneTime": [{"type": "offset", "start": 100},
                              {"startDatetime": "2020-05-20T23:00:00Z"}],
        }],
    }
    recorder = Recorder({"/svc/search": {"data": {"Airings": [away, own]}}})
    service = make_service(tmp_path, recorder)

    await service.get_airings_data("c-home", "745000")

    assert [a["contentId"] for a in service.cache.get("c-home")["data"]["Airings"]] == ["c-home"]
    assert await service.get_media_id_from_content_id("c-home") == "m-home"
    assert recorder.calls["/svc/search"] == 1


@pytest.mark.asyncio
async def test_game_airings_without_requested_content_are_not_cached(tmp_path):
    away = {"contentId": "c-away", "mediaId": "m-away", "milestones": []}
    recorder = Recorder({"/svc/search": {"data": {"Airings": [away]}}})
    service = make_service(tmp_path, recorder)

    with pytest.raises(MalformedDataError):
        await service.get_airings_data("c-home", "745000")
    assert service.cache.get("c-home") is None


@pytest.mark.asyncio
async def test_highlights_sorted_oldest_first(tmp_path):
    payload = {"highlights": {"highlights": {"items": [
        {"headline": "late", "date": "2024-05-20T23:50:00Z"},
        {"headline": "early", "date": "2024-05-20T23:10:00Z"},
    ]}}}
    recorder = Recorder({"/api/v1/game/745000/content": payload})
    service = make_service(tmp_path, recorder)

    items = await service.get_highlights_data("745000", "2020-05-20")
    assert [item["headline"] for item in items] == ["early", "late"]


def test_resolve_date_passthrough():
    assert resolve_date("2024-05-20") == "2024-05-20"
    assert resolve_date(None) == live_date()


SCHEDULE_PAGE = """
<table>
  <tr><th>Date</th><th>Start</th><th>End</th></tr>
  <tr><td>May 20th, 2024</td><td>7PM</td><td>10:30PM</td></tr>
  <tr><td>May 21st, 2024</td><td>6:30PM</td><td>12AM</td></tr>
  <tr><td>Postponed</td><td>TBD</td><td>TBD</td></tr>
</table>
"""

LIVE_NOW = {
    "title": "LIVE NOW: MLB Big Inning",
    "references": {"video": [{"slug": "7-00pm-big-inning",
                              "fields": {"url": "https://dapi.example.com/playback", "duration": "2:30:00"}}]},
}


def test_big_inning_schedule_in_utc():
    assert parse_big_inning_schedule(SCHEDULE_PAGE) == {
        "2024-05-20": {"start": "2024-05-20T23:00:00+00:00", "end": "2024-05-21T02:30:00+00:00"},
        "2024-05-21": {"start": "2024-05-21T22:30:00+00:00", "end": "2024-05-22T04:00:00+00:00"},
    }


def _big_inning_recorder(live):
    return Recorder({
        "/live-stream-games/big-inning": httpx.Response(200, text=SCHEDULE_PAGE),
        "/v2/content/en-us/vsmcontents/live-now-mlb-big-inning": live,
    })


@pytest.mark.asyncio
async def test_big_inning_url_while_on_air(tmp_path):
    recorder = _big_inning_recorder(LIVE_NOW)
    service = make_service(tmp_path, recorder)

    assert await service.get_big_inning_url() == "https://dapi.example.com/playback"
    assert await service.get_big_inning_url() == "https://dapi.example.com/playback"
    assert recorder.calls["/v2/content/en-us/vsmcontents/live-now-mlb-big-inning"] == 1
    assert service.cache.get("biginning")["2024-05-20"]["start"] == "2024-05-20T23:00:00+00:00"


@pytest.mark.asyncio
async def test_big_inning_off_air(tmp_path):
    recorder = _big_inning_recorder({"title": "MLB Big Inning returns tomorrow"})
    service = make_service(tmp_path, recorder)

    assert await service.get_big_inning_url() is None
    assert await service.get_big_inning_url() is None
    assert recorder.calls["/v2/content/en-us/vsmcontents/live-now-mlb-big-inning"] == 1


@pytest.mark.asyncio
async def test_big_inning_live_entry_without_video(tmp_path):
    recorder = _big_inning_recorder({"title": "LIVE NOW: MLB Big Inning", "references": {"video": []}})
    service = make_service(tmp_path, recorder)
    with pytest.raises(MalformedDataError):
        await service.get_big_inning_url()
    assert service.cache.get("biginning-live") is None
