"""
Schedule, airing, play-by-play and highlight data, fetched through the
Cache Store with per-class expiry policies.
"""

import json
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from cache_store import CacheStore, MemoryCache
from errors import GatewayError, MalformedDataError
from expiry import (WEEK_UTC_HOURS, airings_expiry, big_inning_live_expiry, big_inning_schedule_expiry,
                    day_data_expiry, gameday_expiry, highlights_expiry, live_date, week_data_expiry,
                    yesterday_date)
from http_client import UpstreamClient
from offsets import import_companion_milestones

logger = logging.getLogger(__name__)

TEAM_IDS = {
    "ARI": "109", "ATL": "144", "BAL": "110", "BOS": "111", "CHC": "112", "CWS": "145",
    "CIN": "113", "CLE": "114", "COL": "115", "DET": "116", "HOU": "117", "KCR": "118",
    "LAA": "108", "LAD": "119", "MIA": "146", "MIL": "158", "MIN": "142", "NYM": "121",
    "NYY": "147", "OAK": "133", "PHI": "143", "PIT": "134", "STL": "138", "SDP": "135",
    "SFG": "137", "SEA": "136", "TBR": "139", "TEX": "140", "TOR": "141", "WSH": "120",
}

VALID_MEDIA_TYPES = ["Video", "Audio", "Spanish"]

SCOREBOARD_URL = "https://bdfed.stitch.mlbinfra.com/bdfed/transform-mlb-scoreboard"
SCHEDULE_URL = "http://statsapi.mlb.com/api/v1/schedule"
AIRINGS_URL = "https://search-api-mlbtv.mlb.com/svc/search/v2/graphql/persisted/query/core/Airings"
GAMEDAY_URL = "http://statsapi.mlb.com/api/v1.1/game/{game_pk}/feed/live"
HIGHLIGHTS_URL = "https://statsapi.mlb.com/api/v1/game/{game_pk}/content"
BIG_INNING_SCHEDULE_URL = "https://www.mlb.com/live-stream-games/big-inning"
BIG_INNING_LIVE_URL = "https://dapi.cms.mlbinfra.com/v2/content/en-us/vsmcontents/live-now-mlb-big-inning"
BIG_INNING_LIVE_TITLE = "LIVE NOW: MLB Big Inning"

JSON_HEADERS = {
    "Origin": "https://www.mlb.com",
    "Content-Type": "application/json",
}
AIRINGS_HEADERS = {
    "Accept": "application/json",
    "X-BAMSDK-Version": "4.3",
    "X-BAMSDK-Platform": "macintosh",
    "Origin": "https://www.mlb.com",
}

PAY_TV_FLAGS = ("foxAuthRequired", "tbsAuthRequired", "espnAuthRequired", "fs1AuthRequired", "mlbnAuthRequired")

# The Big Inning schedule page lists Eastern Daylight times
SCHEDULE_UTC_OFFSET = timedelta(hours=4)
_SCHEDULE_CELL = re.compile(r"<td[^>]*>([^<]*)")
_SCHEDULE_MONTHS = ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
_SCHEDULE_DATE = re.compile(r"([A-Za-z]{3})[A-Za-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})")
_SCHEDULE_TIME = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*([AaPp][Mm])")


def _scoreboard_params(start_date: str, end_date: str) -> List[tuple]:
    params = [("stitch_env", "prod"), ("sortTemplate", "2"), ("sportId", "1"),
              ("startDate", start_date), ("endDate", end_date)]
    params += [("gameType", game_type) for game_type in "ESRFDLWA"]
    params += [("language", "en"), ("leagueId", "104"), ("leagueId", "103"), ("contextTeamId", "")]
    return params


def resolve_date(value: Optional[str]) -> str:
    """Map 'today' / 'yesterday' / an explicit YYYY-MM-DD to a date string."""
    if not value or value == "today":
        return live_date()
    if value == "yesterday":
        return yesterday_date()
    return value


def _schedule_time(day: date, text: str) -> Optional[datetime]:
    match = _SCHEDULE_TIME.search(text)
    if not match:
        return None
    hour = int(match.group(1)) % 12
    if match.group(3).upper() == "PM":
        hour += 12
    elif int(match.group(1)) == 12:
        # 12AM closes an evening window, so it is the following midnight
        hour = 24
    start_of_day = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start_of_day + timedelta(hours=hour, minutes=int(match.group(2) or 0)) + SCHEDULE_UTC_OFFSET


def parse_big_inning_schedule(page: str) -> Dict[str, Dict[str, str]]:
    """
    Read the Big Inning schedule table.

    Each row is a date cell ("May 20th, 2024") followed by start and end time
    cells ("7PM", "10:30PM"). Returns {"YYYY-MM-DD": {"start": iso, "end": iso}}
    with UTC times; rows that cannot be read are skipped.
    """
    schedule = {}
    for row in page.split("<tr")[1:]:
        cells = [cell.strip() for cell in _SCHEDULE_CELL.findall(row)]
        if len(cells) < 3:
            continue
        match = _SCHEDULE_DATE.search(cells[0])
        if not match or match.group(1).lower() not in _SCHEDULE_MONTHS:
            continue
        try:
            day = date(int(match.group(3)), _SCHEDULE_MONTHS.index(match.group(1).lower()) + 1,
                       int(match.group(2)))
        except ValueError:
            continue
        start, end = _schedule_time(day, cells[1]), _schedule_time(day, cells[2])
        if start is None or end is None:
            continue
        if end <= start:
            end += timedelta(days=1)
        schedule[day.isoformat()] = {"start": start.isoformat(), "end": end.isoformat()}
    return schedule


class MlbDataService:
    """Upstream data lookups backed by the Cache Store."""

    def __init__(self, client: UpstreamClient, cache: CacheStore):
        self.client = client
        self.cache = cache
        self._content_index = MemoryCache()

    async def get_day_data(self, date_string: str, team: Optional[str] = None) -> Dict[str, Any]:
        """Return one day of schedule data, optionally narrowed to a team."""
        cache_key = date_string
        if team:
            team = team.upper()
            if team not in TEAM_IDS:
                raise MalformedDataError(f"unknown team {team}")
            cache_key = team + date_string

        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        logger.debug(f"Fetching day data for {cache_key}")
        if team:
            data = await self.client.get_json(SCHEDULE_URL, headers=JSON_HEADERS, params={
                "sportId": "1",
                "teamId": TEAM_IDS[team],
                "startDate": date_string,
                "endDate": date_string,
                "hydrate": "team,game(content(media(epg)))",
            })
        else:
            data = await self.client.get_json(
                SCOREBOARD_URL, headers=JSON_HEADERS, params=_scoreboard_params(date_string, date_string))

        self.cache.put(cache_key, data, lambda value, now: day_data_expiry(date_string, value, now))
        return data

    async def get_weeks_data(self) -> Dict[str, Any]:
        """Return the schedule for the next three weeks."""
        cached = self.cache.get("week")
        if cached is not None:
            return cached

        start_date = live_date(cutover_hour=WEEK_UTC_HOURS)
        end_date = (date.fromisoformat(start_date) + timedelta(days=20)).isoformat()
        logger.debug(f"Fetching schedule from {start_date} to {end_date}")
        data = await self.client.get_json(
            SCOREBOARD_URL, headers=JSON_HEADERS, params=_scoreboard_params(start_date, end_date))
        self.cache.put("week", data, week_data_expiry(start_date))
        return data

    async def get_airings_data(self, content_id: str, game_pk: Optional[str] = None) -> Dict[str, Any]:
        """
        Return broadcast airing data (milestones) for a content id.

        When a game id is given, every airing of that game is fetched and the
        best-annotated companion airing replaces the sparse one in the cache.
        """
        if game_pk is None:
            cached = self.cache.get(content_id)
            if cached is not None:
                return cached
            variables = {"contentId": content_id}
        else:
            variables = {"partnerProgramIds": [str(game_pk)]}

        data = await self.client.get_json(
            AIRINGS_URL, headers=AIRINGS_HEADERS, params={"variables": json.dumps(variables)})
        if not ((data.get("data") or {}).get("Airings")):
            raise MalformedDataError(f"no airings for content {content_id}")

        if game_pk is not None:
            data = import_companion_milestones(data, content_id)

        self.cache.put(content_id, data, airings_expiry)
        return data

    async def get_media_id_from_content_id(self, content_id: str) -> str:
        key = f"media:{content_id}"
        media_id = self._content_index.get(key)
        if media_id is None:
            data = await self.get_airings_data(content_id)
            media_id = data["data"]["Airings"][0]["mediaId"]
            self._content_index.put(key, media_id)
        return media_id

    async def get_game_pk_from_content_id(self, content_id: str) -> str:
        key = f"game:{content_id}"
        game_pk = self._content_index.get(key)
        if game_pk is None:
            data = await self.get_airings_data(content_id)
            game_pk = data["data"]["Airings"][0]["partnerProgramId"]
            self._content_index.put(key, game_pk)
        return game_pk

    async def get_gameday_data(self, content_id: str) -> Dict[str, Any]:
        """Return the play-by-play feed for the game behind a content id."""
        game_pk = await self.get_game_pk_from_content_id(content_id)
        cache_key = f"g{game_pk}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        data = await self.client.get_json(GAMEDAY_URL.format(game_pk=game_pk), headers=JSON_HEADERS)
        self.cache.put(cache_key, data, gameday_expiry)
        return data

    async def get_highlights_data(self, game_pk: str, game_date: str) -> List[Dict[str, Any]]:
        """Return the highlight items for a game, oldest first."""
        cache_key = f"h{game_pk}"
        data = self.cache.get(cache_key)
        if data is None:
            data = await self.client.get_json(HIGHLIGHTS_URL.format(game_pk=game_pk), headers=JSON_HEADERS)
            self.cache.put(cache_key, data, lambda value, now: highlights_expiry(game_date, value, now))

        items = (((data.get("highlights") or {}).get("highlights") or {}).get("items")) or []
        return sorted(items, key=lambda item: item.get("date", ""))

    async def find_media(self,
                         team: str,
                         media_type: str = "Video",
                         media_date: Optional[str] = None,
                         game_number: Optional[int] = None) -> Optional[Dict[str, str]]:
        """
        Find the media feed for a team (or NATIONAL.<n>) on a date.

        Args:
            team: Team abbreviation, or NATIONAL.<n> for the nth national feed
            media_type: Video, Audio or Spanish
            media_date: today, yesterday or YYYY-MM-DD (None means the live date)
            game_number: 2 for the second game of a double-header

        Returns:
            {"mediaId": ..., "contentId": ...} or None if nothing is available
        """
        epg_title = "MLBTV" if media_type == "Video" else media_type
        feed_key = "type" if media_type == "Audio" else "mediaFeedType"
        game_date = resolve_date(media_date)
        team = team.upper()
        national = team.startswith("NATIONAL.")

        if national or self.cache.get(game_date) is not None:
            data = await self.get_day_data(game_date)
        else:
            data = await self.get_day_data(game_date, team)

        dates = data.get("dates") or []
        games = dates[0].get("games", []) if dates else []
        remaining_games = game_number or 1
        national_count = 0

        for game in games:
            epgs = ((game.get("content") or {}).get("media") or {}).get("epg") or []
            for epg in epgs:
                if epg.get("title") != epg_title:
                    continue
                for item in epg.get("items") or []:
                    if epg_title == "MLBTV" and any(item.get(flag) for flag in PAY_TV_FLAGS):
                        continue
                    if "IN_MARKET_" in (item.get("mediaFeedType") or ""):
                        continue

                    feed_type = (item.get(feed_key) or "").upper()
                    if national:
                        is_postseason = (game.get("gameUtils") or {}).get("isPostSeason")
                        if feed_type != "NATIONAL" and not (epg_title == "MLBTV" and is_postseason):
                            continue
                        national_count += 1
                        if team != f"NATIONAL.{national_count}":
                            continue
                    else:
                        if feed_type in ("", "NATIONAL"):
                            continue
                        side = (game.get("teams") or {}).get(feed_type.lower()) or {}
                        if (side.get("team") or {}).get("abbreviation") != team:
                            continue
                        if remaining_games > 1:
                            remaining_games -= 1
                            break

                    available = item.get("mediaState") == "MEDIA_ON" or (
                        media_date and (item.get("mediaState") == "MEDIA_ARCHIVE"
                                        or (game.get("status") or {}).get("abstractGameState") == "Final"))
                    if not available:
                        logger.info("Event video not yet available")
                        return None
                    return {"mediaId": item.get("mediaId"), "contentId": item.get("contentId")}

        logger.info(f"Could not find media for {team} on {game_date}")
        return None

    async def get_big_inning_schedule(self) -> Dict[str, Dict[str, str]]:
        """Return the Big Inning schedule keyed by date."""
        cached = self.cache.get("biginning")
        if cached is not None:
            return cached

        page = await self.client.get_text(BIG_INNING_SCHEDULE_URL, headers={"Origin": "https://www.mlb.com",
                                                                            "Referer": "https://www.mlb.com"})
        schedule = parse_big_inning_schedule(page)
        logger.debug(f"Big Inning scheduled on {len(schedule)} day(s)")
        self.cache.put("biginning", schedule, big_inning_schedule_expiry)
        return schedule

    async def get_big_inning_url(self) -> Optional[str]:
        """
        Return the playback URL of Big Inning while it is on air, else None.

        The answer is cached until the broadcast is expected to end (on air)
        or start (off air).
        """
        cached = self.cache.get("biginning-live")
        if cached is not None:
            return cached.get("url") or None

        data = await self.client.get_json(BIG_INNING_LIVE_URL, headers=JSON_HEADERS)
        url = None
        duration = None
        if data.get("title") == BIG_INNING_LIVE_TITLE:
            try:
                video = data["references"]["video"][0]
                url = video["fields"]["url"]
            except (KeyError, IndexError, TypeError):
                raise MalformedDataError("live Big Inning entry has no video URL")
            duration = video["fields"].get("duration")
            logger.info("Big Inning is on air")
        else:
            logger.debug("Big Inning is not on air")

        try:
            schedule = await self.get_big_inning_schedule()
        except GatewayError as e:
            logger.warning(f"Big Inning schedule unavailable: {e}")
            schedule = {}

        self.cache.put("biginning-live", {"url": url or ""},
                       lambda value, now: big_inning_live_expiry(schedule, url is not None, duration, now))
        return url
