"""
Playlist Rewrite Engine

Master and variant HLS playlists are rewritten line by line by two small
state machines. Retained media URIs are routed back through this server
(`playlist?url=...` for variants, `ts?url=...` for segments) so keys,
skipping and access protection stay in our hands.
"""

import logging
import re
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import quote, urljoin

import m3u8
from pydantic import BaseModel, field_validator

from errors import MalformedDataError
from offsets import ContentOffsets, inning_slot

logger = logging.getLogger(__name__)

VALID_RESOLUTIONS = ["adaptive", "720p60", "720p", "540p", "504p", "360p", "none"]
VALID_AUDIO_TRACKS = ["all", "English", "English Radio", "Radio Española", "none"]
VALID_SKIP = ["off", "breaks", "pitches"]
VALID_INNING_HALF = ["", "top", "bottom"]
VALID_INNING_NUMBER = [""] + [str(number) for number in range(0, 13)]
VALID_FORCE_VOD = ["off", "on"]

ATTRIBUTE_PATTERN = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
URI_PATTERN = re.compile(r',URI="([^"]+)"')
SELECTION_PATTERN = re.compile(r',(?:AUTOSELECT|DEFAULT)=(?:YES|NO)')

AUDIO_ONLY_VARIANT = '#EXT-X-STREAM-INF:BANDWIDTH=50000,CODECS="mp4a.40.2",AUDIO="{group}"'
ALTERNATE_AUDIO_MEDIA = ('#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aac",NAME="Alternate Audio",'
                         'AUTOSELECT=YES,DEFAULT=YES,URI="{uri}"')


def _valid_or_default(value, valid: List[str]) -> str:
    if value is None:
        return valid[0]
    value = str(value)
    return value if value in valid else valid[0]


def parse_attributes(line: str) -> Dict[str, str]:
    """Parse the attribute list of an HLS tag line into a dict (quotes stripped)."""
    _, _, attributes = line.partition(":")
    return {name: value.strip('"') for name, value in ATTRIBUTE_PATTERN.findall(attributes)}


def select_audio_line(line: str) -> str:
    """Mark an audio media line as the one auto-selected, default track."""
    line = SELECTION_PATTERN.sub("", line)
    match = URI_PATTERN.search(line)
    if match:
        return line[:match.start()] + ",AUTOSELECT=YES,DEFAULT=YES" + line[match.start():]
    return line + ",AUTOSELECT=YES,DEFAULT=YES"


class PlaylistOptions(BaseModel):
    """Rewrite options carried from /stream.m3u8 through to /playlist."""
    resolution: str = VALID_RESOLUTIONS[0]
    audio_track: str = VALID_AUDIO_TRACKS[0]
    audio_url: str = ""
    force_vod: str = VALID_FORCE_VOD[0]
    inning_half: str = VALID_INNING_HALF[0]
    inning_number: str = VALID_INNING_NUMBER[0]
    skip: str = VALID_SKIP[0]
    content_id: Optional[str] = None
    content_protect: Optional[str] = None

    @field_validator("resolution", mode="before")
    @classmethod
    def validate_resolution(cls, v):
        return _valid_or_default(v, VALID_RESOLUTIONS)

    @field_validator("audio_track", mode="before")
    @classmethod
    def validate_audio_track(cls, v):
        return _valid_or_default(v, VALID_AUDIO_TRACKS)

    @field_validator("force_vod", mode="before")
    @classmethod
    def validate_force_vod(cls, v):
        return _valid_or_default(v, VALID_FORCE_VOD)

    @field_validator("inning_half", mode="before")
    @classmethod
    def validate_inning_half(cls, v):
        return _valid_or_default(v, VALID_INNING_HALF)

    @field_validator("inning_number", mode="before")
    @classmethod
    def validate_inning_number(cls, v):
        return _valid_or_default(v, VALID_INNING_NUMBER)

    @field_validator("skip", mode="before")
    @classmethod
    def validate_skip(cls, v):
        return _valid_or_default(v, VALID_SKIP)

    @field_validator("audio_url", mode="before")
    @classmethod
    def validate_audio_url(cls, v):
        return v or ""

    def model_post_init(self, __context) -> None:
        if self.inning_number not in ("", "0") and self.inning_half == "":
            self.inning_half = "top"

    @property
    def wants_innings(self) -> bool:
        return self.inning_half != "" or self.inning_number != ""

    @property
    def wants_skip(self) -> bool:
        return self.skip != "off"

    @property
    def skip_types(self) -> List[str]:
        types = []
        if self.wants_innings:
            types.append("innings")
        if self.wants_skip:
            types.append(self.skip)
        return types

    @property
    def inning_slot(self) -> int:
        number = int(self.inning_number) if self.inning_number else 0
        return inning_slot(number, self.inning_half)

    def protect_suffix(self) -> str:
        return f"&content_protect={self.content_protect}" if self.content_protect else ""

    def playlist_query(self) -> str:
        """Query-string suffix forwarded on every rewritten variant URI."""
        query = ""
        if self.force_vod != "off":
            query += "&force_vod=on"
        if self.inning_half:
            query += f"&inning_half={self.inning_half}"
        if self.inning_number:
            query += f"&inning_number={self.inning_number}"
        if self.skip != "off":
            query += f"&skip={self.skip}"
        if self.content_id:
            query += f"&contentId={self.content_id}"
        return query + self.protect_suffix()


class MasterState(str, Enum):
    SCAN = "scan"                # between variants
    KEEP_VARIANT = "keep"        # next URI line belongs to a retained variant
    DROP_VARIANT = "drop"        # next URI line belongs to a dropped variant


class MasterPlaylistRewriter:
    """Filters tracks of a master playlist and reroutes its URIs."""

    def __init__(self, stream_url: str, options: PlaylistOptions):
        self.stream_url = stream_url
        self.options = options
        self.resolution = options.resolution
        self.frame_rate = "29.97"
        self.height: Optional[str] = None
        if self.resolution not in ("adaptive", "none"):
            self.height = self.resolution.split("p")[0]
            if self.resolution.endswith("p60"):
                self.frame_rate = "59.94"

    def _playlist_uri(self, uri: str) -> str:
        absolute = urljoin(self.stream_url, uri.strip())
        return f"playlist?url={quote(absolute, safe='')}{self.options.playlist_query()}"

    def _matches_video(self, line: str) -> bool:
        attributes = parse_attributes(line)
        resolution = attributes.get("RESOLUTION", "")
        height = resolution.split("x")[-1] if "x" in resolution else ""
        return height == self.height and attributes.get("FRAME-RATE") == self.frame_rate

    def _matches_audio(self, line: str) -> bool:
        track = self.options.audio_track
        name = parse_attributes(line).get("NAME", "")
        return name in (track, track[:-1])

    def _rewrite_audio(self, line: str) -> List[str]:
        options = self.options
        if self.audio_matched:
            return []
        if options.audio_url:
            self.audio_matched = True
            return [ALTERNATE_AUDIO_MEDIA.format(uri=options.audio_url + options.protect_suffix())]
        if options.audio_track == "none":
            return []
        if self.resolution == "none" and ",URI=" not in line:
            return []

        if options.audio_track != "all":
            if not self._matches_audio(line):
                return []
            self.audio_matched = True
            line = select_audio_line(line)

        match = URI_PATTERN.search(line)
        if not match:
            return [line]

        new_uri = self._playlist_uri(match.group(1))
        if self.resolution == "none":
            self.audio_matched = True
            group = parse_attributes(line).get("GROUP-ID", "aac")
            return [line.replace(match.group(0), ""), AUDIO_ONLY_VARIANT.format(group=group), new_uri]
        return [line.replace(match.group(1), new_uri)]

    def rewrite(self, content: str) -> str:
        self.audio_matched = False
        self.video_matched = False
        state = MasterState.SCAN
        output: List[str] = []

        for line in content.strip().splitlines():
            line = line.rstrip("\r")
            if not line.strip():
                continue

            if line.startswith("#EXT-X-I-FRAME-STREAM-INF:"):
                continue
            if self.resolution == "none" and line.startswith("#EXT-X-MEDIA:TYPE=CLOSED-CAPTIONS,"):
                continue
            if line.startswith("#EXT-X-MEDIA:TYPE=AUDIO"):
                output.extend(self._rewrite_audio(line))
                continue
            if line.startswith("#EXT-X-STREAM-INF:"):
                if self.resolution == "none":
                    state = MasterState.DROP_VARIANT
                elif self.resolution == "adaptive":
                    state = MasterState.KEEP_VARIANT
                    output.append(line)
                elif not self.video_matched and self._matches_video(line):
                    self.video_matched = True
                    state = MasterState.KEEP_VARIANT
                    output.append(line)
                else:
                    state = MasterState.DROP_VARIANT
                continue
            if line.startswith("#EXT-X-SESSION-KEY:METHOD=AES-128"):
                continue
            if line.startswith("#"):
                output.append(line)
                continue

            if state == MasterState.KEEP_VARIANT:
                output.append(self._playlist_uri(line))
            state = MasterState.SCAN

        return "\n".join(output) + "\n"


class VariantState(str, Enum):
    PASS = "pass"                # emitting lines as they come
    SKIP_SEGMENT = "skip"        # dropping the current segment through its URI
    GAP = "gap"                  # after a dropped segment, marker already emitted


class VariantPlaylistRewriter:
    """
    Rewrites a media playlist: segment URIs go through /ts with the key
    reference and IV, and segments outside the requested window are
    replaced by a single discontinuity marker per gap.
    """

    def __init__(self, playlist_url: str, options: PlaylistOptions, offsets: Optional[ContentOffsets] = None):
        self.playlist_url = playlist_url
        self.options = options
        self.offsets = offsets
        self.key_url: Optional[str] = None
        self.iv: Optional[str] = None
        self.media_sequence = 0

        self.inning_mode = options.wants_innings
        self.skip_mode = options.wants_skip
        if (self.inning_mode or self.skip_mode) and offsets is None:
            logger.debug(f"No offsets for {options.content_id}, skip options disabled")
            self.inning_mode = False
            self.skip_mode = False

    def _parse_key(self, line: str):
        attributes = parse_attributes(line)
        if attributes.get("METHOD") != "AES-128":
            self.key_url = None
            self.iv = None
            return
        uri = attributes.get("URI")
        if not uri:
            raise MalformedDataError(f"key tag without URI in {self.playlist_url}")
        self.key_url = uri if uri.startswith("http") else urljoin(self.playlist_url, uri)
        iv = attributes.get("IV")
        self.iv = iv[2:].lower() if iv and iv.lower().startswith("0x") else (iv.lower() if iv else None)

    def _segment_uri(self, line: str, sequence: int) -> str:
        segment = quote(urljoin(self.playlist_url, line.strip()), safe="")
        uri = f"ts?url={segment}"
        if self.key_url:
            iv = self.iv or format(sequence, "032x")
            uri += f"&key={quote(self.key_url, safe='')}&iv={iv}"
        return uri + self.options.protect_suffix()

    def _skip_for_inning(self, position: float) -> bool:
        """True while before the requested inning; switches inning mode off once reached."""
        pair = self.offsets.inning_table.get(self.options.inning_slot)
        if pair is not None and pair.start is not None and position < pair.start:
            logger.debug(f"Skipping {position} before {pair.start}")
            return True
        if pair is None or pair.start is None:
            logger.debug(f"Inning start not found for {self.options.content_id}, ignoring")
        self.inning_mode = False
        return False

    def _skip_for_breaks(self, position: float) -> bool:
        intervals = self.offsets.keep_intervals
        while self.keep_index < len(intervals) and position > intervals[self.keep_index].end:
            self.keep_index += 1
        if self.keep_index >= len(intervals):
            return False
        return not intervals[self.keep_index].contains(position)

    def rewrite(self, content: str) -> str:
        state = VariantState.PASS
        position = 0.0
        self.keep_index = 0
        segment_index = 0
        has_endlist = False
        output: List[str] = []

        for line in content.strip().splitlines():
            line = line.rstrip("\r")
            if not line.strip():
                continue

            if line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
                self.media_sequence = int(line.split(":", 1)[1].strip() or 0)
            elif line.startswith("#EXT-X-KEY:"):
                self._parse_key(line)
                continue

            if state == VariantState.SKIP_SEGMENT:
                if not line.startswith("#"):
                    segment_index += 1
                    state = VariantState.GAP
                continue

            if line.startswith("#EXTINF:"):
                duration = line[len("#EXTINF:"):].split(",", 1)[0]
                position += float(duration)
                skip = False
                if self.inning_mode:
                    skip = self._skip_for_inning(position)
                if not skip and not self.inning_mode and self.skip_mode:
                    skip = self._skip_for_breaks(position)
                if skip:
                    if state != VariantState.GAP and (not output or output[-1] != "#EXT-X-DISCONTINUITY"):
                        output.append("#EXT-X-DISCONTINUITY")
                    state = VariantState.SKIP_SEGMENT
                    continue
                state = VariantState.PASS

            if line.startswith("#EXT-X-DISCONTINUITY") and state == VariantState.GAP:
                continue
            if line.startswith("#EXT-X-ENDLIST"):
                if has_endlist:
                    continue
                has_endlist = True
            if line.startswith("#"):
                output.append(line)
                continue

            output.append(self._segment_uri(line, self.media_sequence + segment_index))
            segment_index += 1

        if self.options.force_vod != "off" and not has_endlist:
            output.append("#EXT-X-ENDLIST")
        return "\n".join(output) + "\n"


def first_variant_uri(content: str, url: str) -> str:
    """Return the first variant URI of a master playlist, or the URL itself for a media playlist."""
    playlist = m3u8.loads(content, uri=url)
    if playlist.is_variant:
        if playlist.playlists:
            return playlist.playlists[0].absolute_uri
        return ""
    return url


async def resolve_audio_playlist_url(client, url: str, headers: Optional[Dict[str, str]] = None) -> str:
    """Resolve an alternate-audio master URL to the audio playlist it points at."""
    content = await client.get_text(url, headers=headers)
    playlist_url = first_variant_uri(content, url)
    if not playlist_url:
        logger.warning(f"Failed to find audio playlist URL from {url}")
    return playlist_url
