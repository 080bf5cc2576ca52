"""
Cache expiry policies.

Each schedule-data class gets its expiry computed from what the data says
(live games, trimmed broadcasts, airing highlights) at the moment it is
written. The day boundary is not midnight UTC: a "live date" only advances
once the cutover hour has passed, so late west-coast games still count as
today.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# UTC hour at which the live date advances to the next calendar day
TODAY_UTC_HOURS = 8
# UTC hour used by the multi-week schedule to advance a day
WEEK_UTC_HOURS = 5
# Milestone offsets beyond this many seconds mean the broadcast is not trimmed yet
UNTRIMMED_OFFSET = 20 * 60

FOREVER = datetime.max.replace(tzinfo=timezone.utc)
ONE_MINUTE = timedelta(minutes=1)
FIVE_MINUTES = timedelta(minutes=5)
ONE_HOUR = timedelta(hours=1)
NEXT_GAME_LEAD = timedelta(minutes=15)
ONE_DAY = timedelta(days=1)
# How far ahead an off-air Big Inning lookup searches for the next broadcast
BIG_INNING_LOOKAHEAD_DAYS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by the upstream APIs."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def live_date(now: Optional[datetime] = None, cutover_hour: int = TODAY_UTC_HOURS) -> str:
    now = now or utcnow()
    current = now.astimezone(timezone.utc)
    if current.hour < cutover_hour:
        current = current - timedelta(days=1)
    return current.date().isoformat()


def yesterday_date(now: Optional[datetime] = None) -> str:
    today = date.fromisoformat(live_date(now))
    return (today - timedelta(days=1)).isoformat()


def _start_of_day(date_string: str) -> datetime:
    return datetime.combine(date.fromisoformat(date_string), datetime.min.time(), tzinfo=timezone.utc)


def _is_live(status: Dict[str, Any]) -> bool:
    return (status.get("abstractGameState") == "Live"
            and not status.get("detailedState", "").startswith("Suspended"))


def _day_games(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    dates = data.get("dates") or []
    if not dates:
        return []
    return dates[0].get("games") or []


def day_data_expiry(date_string: str, data: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    """
    Expiry for one day of schedule data.

    Args:
        date_string: The schedule date (YYYY-MM-DD)
        data: Parsed schedule response
        now: Current time (defaults to utcnow)

    Returns:
        The moment the cached entry stops being usable
    """
    now = now or utcnow()
    today = live_date(now)

    if date_string == today:
        games = _day_games(data)
        finals = False
        for i, game in enumerate(games):
            status = game.get("status") or {}
            state = status.get("abstractGameState")
            previous_final = i > 0 and (games[i - 1].get("status") or {}).get("abstractGameState") == "Final"
            tbd_up_next = status.get("startTimeTBD") is True and state != "Final" and previous_final
            if _is_live(status) or tbd_up_next:
                logger.debug("Day data expires in 1 minute due to in progress or upcoming TBD game")
                return now + ONE_MINUTE
            if state == "Final":
                finals = True
            elif not finals and not status.get("startTimeTBD", False) and game.get("gameDate"):
                expiry = parse_timestamp(game["gameDate"]) - NEXT_GAME_LEAD
                logger.debug(f"Day data expires shortly before next game at {game['gameDate']}")
                return max(expiry, now + ONE_MINUTE)
        return now + ONE_HOUR

    if date_string > today:
        return _start_of_day(today) + timedelta(days=1, hours=10)

    if date_string < yesterday_date(now):
        return FOREVER

    return now + ONE_HOUR


def week_data_expiry(start_date: str) -> datetime:
    """The multi-week schedule rolls over at the cutover hour of the following day."""
    return _start_of_day(start_date) + timedelta(days=1, hours=WEEK_UTC_HOURS)


def _milestone_is_untrimmed(airing: Dict[str, Any]) -> bool:
    milestones = airing.get("milestones") or []
    if not milestones:
        return False
    for entry in milestones[0].get("milestoneTime") or []:
        start = entry.get("start")
        if isinstance(start, (int, float)) and start > UNTRIMMED_OFFSET:
            return True
    return False


def airings_expiry(data: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    airings = ((data.get("data") or {}).get("Airings")) or []
    if not airings or not airings[0].get("startDate"):
        return now + ONE_HOUR

    airing = airings[0]
    today = live_date(now)
    game_date = live_date(parse_timestamp(airing["startDate"]))

    if game_date == today:
        product_type = (airing.get("mediaConfig") or {}).get("productType")
        if product_type == "LIVE" or _milestone_is_untrimmed(airing):
            logger.debug("Airings data expires in 5 minutes for live or untrimmed game")
            return now + FIVE_MINUTES
    elif game_date < today:
        return FOREVER

    return now + ONE_HOUR


def highlights_expiry(game_date: str, data: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    today = live_date(now)

    if game_date == today:
        for epg in ((data.get("media") or {}).get("epg")) or []:
            items = epg.get("items") or []
            if items and items[0].get("mediaState") == "MEDIA_ON":
                return now + FIVE_MINUTES
    elif game_date < today:
        return FOREVER

    return now + ONE_HOUR


def gameday_expiry(data: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    game_data = data.get("gameData") or {}

    if _is_live(game_data.get("status") or {}):
        return now + FIVE_MINUTES

    official_date = (game_data.get("datetime") or {}).get("officialDate")
    if official_date and official_date < live_date(now):
        return FOREVER

    return now + ONE_HOUR


def big_inning_schedule_expiry(data: Any, now: Optional[datetime] = None) -> datetime:
    """The published Big Inning schedule is re-read once a day."""
    return (now or utcnow()) + ONE_DAY


def _duration(value: Optional[str]) -> Optional[timedelta]:
    """Parse an H:MM[:SS] duration."""
    try:
        parts = [int(part) for part in (value or "").split(":")]
    except ValueError:
        return None
    if len(parts) < 2:
        return None
    return timedelta(hours=parts[0], minutes=parts[1], seconds=parts[2] if len(parts) > 2 else 0)


def big_inning_live_expiry(schedule: Dict[str, Dict[str, str]],
                           live: bool,
                           duration: Optional[str] = None,
                           now: Optional[datetime] = None) -> datetime:
    """
    Expiry for the live-now Big Inning lookup.

    While on air the lookup holds until an hour past today's scheduled end,
    or for the listed video duration when today is not on the schedule. Off
    air it holds until the next scheduled start within BIG_INNING_LOOKAHEAD_DAYS.
    """
    now = now or utcnow()
    today = live_date(now)

    if live:
        end = (schedule.get(today) or {}).get("end")
        if end and now < parse_timestamp(end):
            return parse_timestamp(end) + ONE_HOUR
        length = _duration(duration)
        return now + length if length else now + ONE_HOUR

    check = date.fromisoformat(today)
    for _ in range(BIG_INNING_LOOKAHEAD_DAYS):
        start = (schedule.get(check.isoformat()) or {}).get("start")
        if start and now < parse_timestamp(start):
            logger.debug(f"Big Inning lookup expires at next scheduled start {start}")
            return parse_timestamp(start)
        check += timedelta(days=1)
    return now + ONE_DAY
