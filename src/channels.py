"""
M3U channel list and XMLTV guide built from the multi-week schedule.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

from expiry import parse_timestamp
from mlb_data import PAY_TV_FLAGS

logger = logging.getLogger(__name__)

TEAM_LOGO_URL = "https://www.mlbstatic.com/team-logos/{team_id}.svg"
LEAGUE_LOGO_URL = "https://www.mlbstatic.com/team-logos/league-on-dark/1.svg"
XMLTV_TIME_FORMAT = "%Y%m%d%H%M%S +0000"
GAME_HOURS = 3


@dataclass
class ChannelFeed:
    channel_id: str
    team: str
    team_type: str
    logo: str
    game: Dict[str, Any]
    item: Dict[str, Any]
    previous_game: Optional[Dict[str, Any]] = None


def _epg_title(media_type: str) -> str:
    return "MLBTV" if media_type == "Video" else media_type


def _abbreviation(game: Dict[str, Any], side: str) -> str:
    return (((game.get("teams") or {}).get(side) or {}).get("team") or {}).get("abbreviation", "")


def iter_feeds(weeks_data: Dict[str, Any],
               media_type: str = "Video",
               include_teams: Optional[List[str]] = None,
               exclude_teams: Optional[List[str]] = None) -> Iterator[ChannelFeed]:
    """
    Walk every EPG item in the schedule that maps to a channel.

    Team feeds become `<title>.<TEAM>` channels; national feeds are numbered
    per day (`<title>.NATIONAL.<n>`) unless the caller filters by team.
    """
    title = _epg_title(media_type)
    feed_key = "type" if media_type == "Audio" else "mediaFeedType"
    include_teams = include_teams or []
    exclude_teams = exclude_teams or []

    for day in weeks_data.get("dates") or []:
        national_counter = 0
        games = day.get("games") or []
        for index, game in enumerate(games):
            for epg in ((game.get("content") or {}).get("media") or {}).get("epg") or []:
                if epg.get("title") != title:
                    continue
                for item in epg.get("items") or []:
                    if title == "MLBTV" and any(item.get(flag) for flag in PAY_TV_FLAGS):
                        continue
                    if "IN_MARKET_" in (item.get("mediaFeedType") or "") or item.get("language") == "es":
                        continue

                    team_type = (item.get(feed_key) or "").upper()
                    if title == "MLBTV" and (game.get("gameUtils") or {}).get("isPostSeason"):
                        team_type = "NATIONAL"

                    if team_type == "NATIONAL":
                        team = _abbreviation(game, "home")
                        opponent = _abbreviation(game, "away")
                        national_counter += 1
                    elif team_type in ("HOME", "AWAY"):
                        team = _abbreviation(game, team_type.lower())
                        opponent = _abbreviation(game, "away" if team_type == "HOME" else "home")
                    else:
                        continue

                    if exclude_teams and (team in exclude_teams or opponent in exclude_teams
                                          or team_type in exclude_teams):
                        continue
                    if include_teams and team not in include_teams and team_type not in include_teams:
                        continue

                    logo = TEAM_LOGO_URL.format(team_id=item.get("mediaFeedSubType", ""))
                    if team_type == "NATIONAL" and (not include_teams or "NATIONAL" in include_teams):
                        team = f"NATIONAL.{national_counter}"
                        logo = LEAGUE_LOGO_URL

                    previous = games[index - 1] if index > 0 else None
                    yield ChannelFeed(f"{title}.{team}", team, team_type, logo, game, item, previous)


def _extra_included(name: str, include_teams: List[str], exclude_teams: List[str]) -> bool:
    if name in exclude_teams:
        return False
    return not include_teams or name in include_teams


def build_channels(weeks_data: Dict[str, Any],
                   server: str,
                   media_type: str = "Video",
                   include_teams: Optional[List[str]] = None,
                   exclude_teams: Optional[List[str]] = None,
                   resolution: str = "720p60",
                   starting_channel_number: int = 1,
                   content_protect: Optional[str] = None,
                   multiview_url: Optional[str] = None,
                   big_inning: bool = False) -> str:
    """Build an M3U channel list with one channel per team/national feed, plus Big Inning and multiview."""
    include_teams = include_teams or []
    exclude_teams = exclude_teams or []
    protect = f"&content_protect={content_protect}" if content_protect else ""

    team_channels: Dict[str, Dict[str, str]] = {}
    national_channels: Dict[str, Dict[str, str]] = {}
    for feed in iter_feeds(weeks_data, media_type, include_teams, exclude_teams):
        stream = f"{server}/stream.m3u8?team={quote(feed.team, safe='')}&mediaType={media_type}"
        if media_type == "Video":
            stream += f"&resolution={resolution}"
        stream += protect
        target = national_channels if feed.team.startswith("NATIONAL.") else team_channels
        target[feed.channel_id] = {"logo": feed.logo, "stream": stream}

    channels = dict(sorted(team_channels.items()))
    channels.update(national_channels)

    title = _epg_title(media_type)
    if title == "MLBTV" and big_inning and _extra_included("BIGINNING", include_teams, exclude_teams):
        channels[f"{title}.BIGINNING"] = {
            "logo": LEAGUE_LOGO_URL,
            "stream": f"{server}/stream.m3u8?type=biginning&mediaType=Video&resolution={resolution}{protect}",
        }
    if title == "MLBTV" and multiview_url and _extra_included("MULTIVIEW", include_teams, exclude_teams):
        channels[f"{title}.MULTIVIEW"] = {"logo": LEAGUE_LOGO_URL, "stream": multiview_url}

    lines = ["#EXTM3U"]
    for number, (channel_id, channel) in enumerate(channels.items(), start=starting_channel_number):
        lines.append(
            f'#EXTINF:-1 CUID="{channel_id}" channelID="{channel_id}" tvg-num="1.{number}" '
            f'tvg-chno="1.{number}" tvg-id="{channel_id}" tvg-name="{channel_id}" '
            f'tvg-logo="{channel["logo"]}" group-title="{title}",{channel_id}')
        lines.append(channel["stream"])
    logger.debug(f"Built {len(channels)} channels")
    return "\n".join(lines) + "\n"


def _team_name(game: Dict[str, Any], side: str) -> str:
    return (((game.get("teams") or {}).get(side) or {}).get("team") or {}).get("teamName", "")


def _pitcher(game: Dict[str, Any], side: str) -> Optional[str]:
    return (((game.get("teams") or {}).get(side) or {}).get("probablePitcher") or {}).get("fullName")


def _programme_window(game: Dict[str, Any], previous: Optional[Dict[str, Any]]):
    """Return (start, stop, extra description), or None when the start time is unknown."""
    status = game.get("status") or {}
    start = parse_timestamp(game["gameDate"])
    hours = GAME_HOURS
    note = ""
    if status.get("resumedFrom"):
        hours = 1
        start += timedelta(hours=1)
        note = game.get("description") or "Resumption of suspended game."
    elif status.get("startTimeTBD"):
        if game.get("doubleHeader") == "Y" and game.get("gameNumber") == 2 and previous:
            start = parse_timestamp(previous["gameDate"]) + timedelta(hours=4)
            note = "Start time TBD."
        else:
            return None
    return start, start + timedelta(hours=hours), note


def _add_programme(root: ET.Element, channel_id: str, start: datetime, stop: datetime,
                   title: str, description: str, icon: str):
    programme = ET.SubElement(root, "programme", {
        "channel": channel_id,
        "start": start.strftime(XMLTV_TIME_FORMAT),
        "stop": stop.strftime(XMLTV_TIME_FORMAT),
    })
    ET.SubElement(programme, "title", {"lang": "en"}).text = title
    ET.SubElement(programme, "desc", {"lang": "en"}).text = description.strip()
    ET.SubElement(programme, "category", {"lang": "en"}).text = "Sports"
    ET.SubElement(programme, "icon", {"src": icon})


def build_guide(weeks_data: Dict[str, Any],
                media_type: str = "Video",
                include_teams: Optional[List[str]] = None,
                exclude_teams: Optional[List[str]] = None,
                multiview_url: Optional[str] = None,
                big_inning_schedule: Optional[Dict[str, Dict[str, str]]] = None) -> str:
    """Build an XMLTV guide with one programme per game feed."""
    include_teams = include_teams or []
    exclude_teams = exclude_teams or []
    feed_key = "type" if media_type == "Audio" else "mediaFeedType"
    title_prefix = _epg_title(media_type)

    channels: Dict[str, str] = {}
    programmes = []
    for feed in iter_feeds(weeks_data, media_type, include_teams, exclude_teams):
        game, item = feed.game, feed.item
        channels[feed.channel_id] = feed.logo

        title = (f"MLB Baseball: {_team_name(game, 'away')} at {_team_name(game, 'home')} "
                 f"({item.get('callLetters', '')}{' Radio' if media_type == 'Audio' else ''})")
        description = ""
        if game.get("doubleHeader", "N") != "N":
            description += f"Game {game.get('gameNumber')}. "
        away_pitcher, home_pitcher = _pitcher(game, "away"), _pitcher(game, "home")
        if away_pitcher or home_pitcher:
            description += f"{away_pitcher or 'TBD'} vs. {home_pitcher or 'TBD'}. "
        if feed.team_type == "NATIONAL" and (item.get(feed_key) or "").upper() in ("HOME", "AWAY"):
            side = "away" if item[feed_key].upper() == "AWAY" else "home"
            description += f"{_team_name(game, side)} alternate audio. "

        window = _programme_window(game, feed.previous_game)
        if window is None:
            continue
        start, stop, note = window
        programmes.append((feed.channel_id, start, stop, title, description + note, feed.logo))

    if (title_prefix == "MLBTV" and big_inning_schedule is not None
            and _extra_included("BIGINNING", include_teams, exclude_teams)):
        channel_id = f"{title_prefix}.BIGINNING"
        channels[channel_id] = LEAGUE_LOGO_URL
        for day in weeks_data.get("dates") or []:
            window = big_inning_schedule.get(day["date"]) or {}
            if window.get("start") and window.get("end"):
                programmes.append((channel_id, parse_timestamp(window["start"]), parse_timestamp(window["end"]),
                                   "MLB Big Inning", "Live look-ins and big moments from around the league",
                                   LEAGUE_LOGO_URL))

    if title_prefix == "MLBTV" and multiview_url and _extra_included("MULTIVIEW", include_teams, exclude_teams):
        channel_id = f"{title_prefix}.MULTIVIEW"
        channels[channel_id] = LEAGUE_LOGO_URL
        for day in weeks_data.get("dates") or []:
            day_start = datetime.fromisoformat(day["date"] + "T00:00:00+00:00")
            programmes.append((channel_id, day_start, day_start + timedelta(days=1), "MLB Multiview",
                               "Watch up to 4 games at once. Start the multiview stream first and stop it when done.",
                               LEAGUE_LOGO_URL))

    root = ET.Element("tv", {"generator-info-name": "mlb-proxy"})
    for channel_id, logo in channels.items():
        channel = ET.SubElement(root, "channel", {"id": channel_id})
        ET.SubElement(channel, "display-name").text = channel_id
        ET.SubElement(channel, "icon", {"src": logo})
    for programme in programmes:
        _add_programme(root, *programme)

    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"
