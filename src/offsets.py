"""
Offset Extractor

Works out where innings and individual pitches fall inside a broadcast so
the variant playlist can skip to an inning or cut out the dead time between
pitches. All offsets are seconds from the start of the stream.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cache_store import MemoryCache
from errors import GatewayError, MalformedDataError
from expiry import parse_timestamp

logger = logging.getLogger(__name__)

# Inning boundaries: start earlier, end later, to avoid cutting action
INNING_PAD_START = 5
INNING_PAD_END = 30
# Assumed length of the break between two half innings
INNING_BREAK_LENGTH = 120

# Pitch/event padding
EVENT_PAD_START = 0
EVENT_PAD_END = 15
EVENT_PAD_ADJUST = 20
DEFAULT_EVENT_DURATION = 15

# Play events that do not count as action when skipping breaks
BREAK_TYPES = ["Game Advisory", "Pitching Substitution", "Offensive Substitution",
               "Defensive Sub", "Defensive Switch", "Runner Placed On Base"]
# Play events that are kept (besides the end of each at-bat) when skipping pitches
ACTION_TYPES = ["Wild Pitch", "Passed Ball", "Stolen Base", "Caught Stealing",
                "Pickoff", "Out", "Balk", "Defensive Indiff"]

SKIP_TYPES = ("innings", "breaks", "pitches")


@dataclass
class OffsetPair:
    start: Optional[float] = None
    end: Optional[float] = None

    def contains(self, position: float) -> bool:
        return (self.start is not None and self.end is not None
                and self.start < position < self.end)


class OffsetTable:
    """Slot-indexed start/end pairs; slot 0 is the broadcast start."""

    def __init__(self, pairs: Optional[Iterable[OffsetPair]] = None):
        self.pairs: List[OffsetPair] = list(pairs or [])

    def _ensure(self, slot: int):
        while len(self.pairs) <= slot:
            self.pairs.append(OffsetPair())

    def get(self, slot: int) -> Optional[OffsetPair]:
        if 0 <= slot < len(self.pairs):
            return self.pairs[slot]
        return None

    def set_start(self, slot: int, value: float):
        self._ensure(slot)
        self.pairs[slot].start = value

    def set_end(self, slot: int, value: float):
        self._ensure(slot)
        self.pairs[slot].end = value

    def infer_missing(self, break_length: float = INNING_BREAK_LENGTH):
        """
        Fill missing bounds from the nearest observed neighbour.

        A missing start becomes the closest earlier observed end plus the
        break length; a missing end becomes the closest later observed start
        minus the break length. Inferred values never feed further inference.
        """
        observed = [(pair.start, pair.end) for pair in self.pairs]
        for slot, pair in enumerate(self.pairs):
            if pair.start is None:
                previous_end = next(
                    (observed[i][1] for i in range(slot - 1, -1, -1) if observed[i][1] is not None), None)
                if previous_end is not None:
                    pair.start = previous_end + break_length
            if pair.end is None:
                next_start = next(
                    (observed[i][0] for i in range(slot + 1, len(observed)) if observed[i][0] is not None), None)
                if next_start is not None:
                    pair.end = next_start - break_length

    def __len__(self) -> int:
        return len(self.pairs)

    def __repr__(self) -> str:
        return f"OffsetTable({[(p.start, p.end) for p in self.pairs]})"


@dataclass
class ContentOffsets:
    inning_table: OffsetTable
    keep_intervals: List[OffsetPair] = field(default_factory=list)


def inning_slot(inning_number: int, inning_half: str) -> int:
    """Table slot of a half inning: inning*2, minus one for the top half."""
    if inning_number <= 0:
        return 0
    slot = inning_number * 2
    if inning_half == "top":
        slot -= 1
    return slot


# ----------------------------------------------------------------------
# Milestones
# ----------------------------------------------------------------------

def _milestone_offset(milestone: Dict[str, Any]) -> Optional[float]:
    for entry in milestone.get("milestoneTime") or []:
        if entry.get("type") == "offset" and entry.get("start") is not None:
            return float(entry["start"])
    return None


def _milestone_timestamp(milestone: Dict[str, Any]) -> Optional[datetime]:
    for entry in milestone.get("milestoneTime") or []:
        if entry.get("startDatetime"):
            return parse_timestamp(entry["startDatetime"])
    return None


def _milestone_anchor(milestone: Dict[str, Any]) -> Optional[datetime]:
    """Wall-clock time of stream position zero, according to one milestone."""
    offset = _milestone_offset(milestone)
    timestamp = _milestone_timestamp(milestone)
    if offset is None or timestamp is None:
        return None
    return timestamp - timedelta(seconds=offset)


def _keyword(milestone: Dict[str, Any], name: str) -> Optional[str]:
    for keyword in milestone.get("keywords") or []:
        if keyword.get("type") == name:
            return str(keyword.get("value"))
    return None


def broadcast_start(airing: Dict[str, Any]) -> Optional[Tuple[float, datetime]]:
    """Return (broadcast start offset, stream zero wall-clock time) from the BROADCAST_START milestone."""
    for milestone in airing.get("milestones") or []:
        if milestone.get("milestoneType") == "BROADCAST_START":
            offset = _milestone_offset(milestone)
            anchor = _milestone_anchor(milestone)
            if offset is not None and anchor is not None:
                return offset, anchor
    return None


def _narrowed(data: Dict[str, Any], airing: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(data)
    result["data"] = dict(data["data"])
    result["data"]["Airings"] = [airing]
    return result


def import_companion_milestones(data: Dict[str, Any], content_id: str) -> Dict[str, Any]:
    """
    Narrow a game's airings to the one for content_id, replacing its
    milestones with those of the best-annotated airing of the same game.

    The companion's offsets are shifted by the difference between the two
    broadcasts' anchors (stream zero wall-clock times) so they line up with
    this broadcast's stream. Without a usable companion the airing keeps
    its own milestones.

    Raises:
        MalformedDataError: No airing of the game carries content_id
    """
    airings = (data.get("data") or {}).get("Airings") or []
    own = next((a for a in airings if a.get("contentId") == content_id), None)
    if own is None:
        raise MalformedDataError(f"no airing for content {content_id} among {len(airings)} game airings")

    companions = [a for a in airings if a is not own and a.get("milestones")]
    if not own.get("milestones") or not companions:
        logger.debug(f"No companion milestones to import for {content_id}")
        return _narrowed(data, own)
    companion = max(companions, key=lambda a: len(a["milestones"]))

    own_anchor = _milestone_anchor(own["milestones"][0])
    companion_anchor = _milestone_anchor(companion["milestones"][0])
    if own_anchor is None or companion_anchor is None:
        logger.debug(f"Missing broadcast anchor, keeping own milestones for {content_id}")
        return _narrowed(data, own)

    adjust = (companion_anchor - own_anchor).total_seconds()
    logger.debug(f"Importing {len(companion['milestones'])} milestones adjusted by {adjust}s")

    milestones = copy.deepcopy(companion["milestones"])
    for milestone in milestones:
        for entry in milestone.get("milestoneTime") or []:
            if entry.get("type") == "offset" and entry.get("start") is not None:
                entry["start"] = entry["start"] + adjust

    merged = dict(own)
    merged["milestones"] = milestones
    return _narrowed(data, merged)


def inning_table_from_milestones(milestones: List[Dict[str, Any]],
                                 anchor: datetime,
                                 broadcast_start_offset: float,
                                 skip_adjust: float = 0) -> OffsetTable:
    table = OffsetTable([OffsetPair(start=broadcast_start_offset)])
    for milestone in milestones:
        milestone_type = milestone.get("milestoneType")
        if milestone_type not in ("INNING_START", "INNING_END"):
            continue
        inning = _keyword(milestone, "inning")
        if not inning or not inning.isdigit():
            continue
        half = "top" if (_keyword(milestone, "top") or "").lower() == "true" else "bottom"
        slot = inning_slot(int(inning), half)

        offset = _milestone_offset(milestone)
        if offset is None:
            timestamp = _milestone_timestamp(milestone)
            if timestamp is None:
                continue
            offset = (timestamp - anchor).total_seconds()

        if milestone_type == "INNING_START":
            table.set_start(slot, offset - INNING_PAD_START + skip_adjust)
        else:
            table.set_end(slot, offset + INNING_PAD_END + skip_adjust)

    table.infer_missing()
    return table


# ----------------------------------------------------------------------
# Play-by-play
# ----------------------------------------------------------------------

def _event_name(event: Dict[str, Any]) -> str:
    return ((event.get("details") or {}).get("event")) or ""


def _is_break(event: Dict[str, Any]) -> bool:
    name = _event_name(event)
    return bool(name) and any(kind in name for kind in BREAK_TYPES)


def _is_action(event: Dict[str, Any]) -> bool:
    name = _event_name(event)
    return bool(name) and any(kind in name for kind in ACTION_TYPES)


def _plays(gameday: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (((gameday.get("liveData") or {}).get("plays") or {}).get("allPlays")) or []


def _seconds_since(value: str, anchor: datetime) -> float:
    return (parse_timestamp(value) - anchor).total_seconds()


def inning_table_from_plays(gameday: Dict[str, Any],
                            anchor: datetime,
                            broadcast_start_offset: float,
                            skip_adjust: float = 0) -> OffsetTable:
    """Inning starts from the first non-break event of each half inning."""
    table = OffsetTable([OffsetPair(start=broadcast_start_offset)])
    last_half = None
    for play in _plays(gameday):
        about = play.get("about") or {}
        if not about.get("inning"):
            continue
        half = (about.get("inning"), about.get("halfInning"))
        if half == last_half:
            continue
        last_half = half
        slot = inning_slot(int(about["inning"]), about.get("halfInning", ""))
        for event in play.get("playEvents") or []:
            if not _is_break(event) and event.get("startTime"):
                table.set_start(slot, _seconds_since(event["startTime"], anchor)
                                - INNING_PAD_START + skip_adjust)
                break
    table.infer_missing()
    return table


def keep_intervals(gameday: Dict[str, Any],
                   anchor: datetime,
                   skip_type: str,
                   skip_adjust: float = 0) -> List[OffsetPair]:
    """
    Build the intervals to keep when skipping breaks or pitches.

    Args:
        gameday: Play-by-play feed
        anchor: Wall-clock time of stream position zero
        skip_type: "breaks" (keep all action) or "pitches" (keep key actions only)
        skip_adjust: Manual shift in seconds

    Returns:
        Keep intervals ordered by start time
    """
    intervals: List[OffsetPair] = []

    for play in _plays(gameday):
        events = play.get("playEvents") or []

        if skip_type == "breaks":
            actions = [j for j, event in enumerate(events) if not _is_break(event) and event.get("startTime")]
            current = OffsetPair()
            in_at_bat = False
            for x, j in enumerate(actions):
                event = events[j]
                start = _seconds_since(event["startTime"], anchor)
                if current.start is None:
                    current.start = start - EVENT_PAD_START + skip_adjust
                    if in_at_bat:
                        current.start -= EVENT_PAD_ADJUST
                if event.get("endTime"):
                    current.end = _seconds_since(event["endTime"], anchor) + EVENT_PAD_END + skip_adjust
                else:
                    current.end = start + skip_adjust + DEFAULT_EVENT_DURATION
                # A skipped event inside the at-bat means a break: close this interval
                if x > 0 and j > actions[x - 1] + 1:
                    in_at_bat = True
                    current.end += EVENT_PAD_ADJUST
                    intervals.append(current)
                    current = OffsetPair()
            if current.end is not None:
                intervals.append(current)

        else:
            actions = [j for j, event in enumerate(events) if _is_action(event)]
            if events and (not actions or actions[-1] < len(events) - 1):
                actions.append(len(events) - 1)
            for x, j in enumerate(actions):
                event = events[j]
                if not event.get("startTime"):
                    continue
                pad_start, pad_end = EVENT_PAD_START, EVENT_PAD_END
                if x < len(actions) - 1:
                    pad_start += EVENT_PAD_ADJUST
                    pad_end -= EVENT_PAD_ADJUST
                start = _seconds_since(event["startTime"], anchor)
                if event.get("endTime"):
                    end = _seconds_since(event["endTime"], anchor) + pad_end + skip_adjust
                else:
                    end = start + pad_end + skip_adjust + DEFAULT_EVENT_DURATION
                intervals.append(OffsetPair(start - pad_start + skip_adjust, end))

    intervals.sort(key=lambda pair: pair.start)
    return intervals


class OffsetExtractor:
    """Computes and remembers offset tables per content id."""

    def __init__(self, data_service):
        self.data = data_service
        self._tables = MemoryCache()

    def get(self, content_id: Optional[str]) -> Optional[ContentOffsets]:
        if not content_id:
            return None
        return self._tables.get(content_id)

    async def compute(self, content_id: str, skip_types: List[str], skip_adjust: float = 0) -> Optional[ContentOffsets]:
        """
        Derive inning and/or keep-interval offsets for a broadcast.

        Failures are logged and leave no table behind, which quietly turns
        the skip options off for that content.
        """
        try:
            if skip_adjust:
                logger.info(f"Manual adjustment of {skip_adjust} seconds being applied")

            airings = await self.data.get_airings_data(content_id)
            airing = airings["data"]["Airings"][0]
            product_type = (airing.get("mediaConfig") or {}).get("productType")
            if product_type == "VOD" and len(airing.get("milestones") or []) < 2:
                logger.info("Too few milestones, looking for a companion broadcast")
                airings = await self.data.get_airings_data(content_id, airing.get("partnerProgramId"))
                airing = airings["data"]["Airings"][0]

            start = broadcast_start(airing)
            if start is None:
                raise MalformedDataError(f"no broadcast start milestone for {content_id}")
            offset, anchor = start
            logger.debug(f"Broadcast start detected as {anchor.isoformat()}, offset {offset}")

            table = OffsetTable([OffsetPair(start=offset)])
            intervals: List[OffsetPair] = []
            gameday = None

            if "innings" in skip_types:
                table = inning_table_from_milestones(airing.get("milestones") or [], anchor, offset, skip_adjust)
                if len(table) <= 1:
                    gameday = await self.data.get_gameday_data(content_id)
                    table = inning_table_from_plays(gameday, anchor, offset, skip_adjust)
                logger.debug(f"Inning offsets: {table}")

            skip_type = next((kind for kind in ("breaks", "pitches") if kind in skip_types), None)
            if skip_type:
                if gameday is None:
                    gameday = await self.data.get_gameday_data(content_id)
                intervals = keep_intervals(gameday, anchor, skip_type, skip_adjust)
                logger.debug(f"Keep intervals: {len(intervals)}")

            result = ContentOffsets(table, intervals)
            self._tables.put(content_id, result)
            return result

        except (GatewayError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Could not compute offsets for {content_id}: {e}")
            return None
