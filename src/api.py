from fastapi import FastAPI, HTTPException, Query, Response, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import base64
import logging
import os
import secrets
import signal
from urllib.parse import urljoin, urlparse
from typing import Optional, List

from pydantic import ValidationError

from cache_store import CacheStore
from channels import build_channels, build_guide
from config import settings, VERSION
from errors import BlackoutError, ConfigurationError, GatewayError, InvalidRequestError
from http_client import UpstreamClient
from mlb_data import MlbDataService, VALID_MEDIA_TYPES
from models import MultiviewSpec, MultiviewStatusResponse
from multiview import MultiviewComposer
from offsets import OffsetExtractor
from playlist import (MasterPlaylistRewriter, PlaylistOptions, VariantPlaylistRewriter,
                      VALID_RESOLUTIONS, resolve_audio_playlist_url)
from segments import SegmentFetcher
from stores import CredentialStore, PreferencesStore, SessionStore
from token_chain import TokenChainManager

logger = logging.getLogger(__name__)

SAMPLE_STREAM_URL = "https://www.radiantmediaplayer.com/media/rmp-segment/bbb-abr-aes/playlist.m3u8"
PLAYLIST_MEDIA_TYPE = "audio/x-mpegURL"


class GatewayServices:
    """The services behind the gateway, wired together once per process."""

    def __init__(self,
                 client: Optional[UpstreamClient] = None,
                 cache: Optional[CacheStore] = None,
                 session: Optional[SessionStore] = None,
                 credentials: Optional[CredentialStore] = None,
                 preferences: Optional[PreferencesStore] = None,
                 composer: Optional[MultiviewComposer] = None):
        self.client = client or UpstreamClient()
        self.cache = cache or CacheStore(settings.CACHE_DIR)
        self.session = session or SessionStore(settings.session_file)
        self.credentials = credentials or CredentialStore(
            settings.credentials_file, settings.ACCOUNT_USERNAME, settings.ACCOUNT_PASSWORD)
        self.preferences = preferences or PreferencesStore(settings.preferences_file)
        self.tokens = TokenChainManager(self.client, self.session, self.credentials)
        self.data = MlbDataService(self.client, self.cache)
        self.offsets = OffsetExtractor(self.data)
        self.segments = SegmentFetcher(self.client)
        self.composer = composer or MultiviewComposer()

    def content_protect(self) -> Optional[str]:
        """Key carried on rewritten URLs, only when the gateway is protected."""
        if settings.protection_enabled:
            return self.session.content_protect()
        return None

    async def aclose(self):
        if self.composer.process is not None:
            await self.composer.stop()
        await self.client.aclose()


def halt():
    """Ask the process to shut down; a missing credential cannot be fixed at runtime."""
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("mlb-proxy starting up...")
    if getattr(app.state, "services", None) is None:
        app.state.services = GatewayServices()

    yield

    logger.info("mlb-proxy shutting down...")
    await app.state.services.aclose()


app = FastAPI(
    title="mlb-proxy",
    version=VERSION,
    description="Personal MLB.tv gateway re-serving broadcasts as local HLS",
    lifespan=lifespan,
)

# Players on other origins (browsers, Chromecast) fetch playlists and segments directly
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


def get_services(request: Request) -> GatewayServices:
    return request.app.state.services


def _matches(given: str, expected: str) -> bool:
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


async def verify_access(
    request: Request,
    content_protect: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None)
):
    """
    Verify access if PAGE_USERNAME/PAGE_PASSWORD are configured.
    Access is granted by:
    - HTTP Basic credentials matching the page username/password
    - the content_protect query parameter (carried on every rewritten URL)

    If no page credentials are set, protection is disabled.
    """
    if not settings.protection_enabled:
        return True

    services = get_services(request)
    if content_protect and _matches(content_protect, services.session.content_protect()):
        return True

    if authorization and authorization.startswith("Basic "):
        try:
            decoded = base64.b64decode(authorization[len("Basic "):]).decode("utf-8")
        except ValueError:
            decoded = ""
        username, _, password = decoded.partition(":")
        if _matches(username, settings.PAGE_USERNAME) and _matches(password, settings.PAGE_PASSWORD):
            return True

    raise HTTPException(
        status_code=401,
        detail="Not Authorized",
        headers={"WWW-Authenticate": "Basic"},
    )


def _with_cors(response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, HEAD, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "*"
    return response


def playlist_response(content: str) -> Response:
    return _with_cors(Response(content=content, media_type=PLAYLIST_MEDIA_TYPE))


def handle_failure(context: str, e: Exception, body: str = "") -> Response:
    """Log a handler failure and answer with an empty (or explanatory) 200 body."""
    if isinstance(e, ConfigurationError):
        logger.critical(f"❌ {context}: {e}. Shutting down, check credentials and session data.")
        halt()
    elif isinstance(e, BlackoutError):
        logger.warning(f"{context}: {e}")
    elif isinstance(e, GatewayError):
        logger.error(f"{context} error: {e}")
    else:
        logger.exception(f"Unexpected {context} error: {e}")
    return PlainTextResponse(body)


def _flag(value: Optional[str]) -> bool:
    return bool(value) and value.lower() not in ("false", "0", "off", "no")


def _split_list(values: Optional[List[str]]) -> List[str]:
    items = []
    for value in values or []:
        items.extend(part for part in value.split(",") if part)
    return items


def _number(name: str, value: Optional[str], kind=float, default=None):
    """Parse an optional numeric query value; bad input is a request error, not a 422."""
    if value is None or value == "":
        return default
    try:
        return kind(value)
    except ValueError:
        raise InvalidRequestError(f"{name} must be a number, got {value!r}")


def _required(name: str, value: Optional[str]) -> str:
    if not value:
        raise InvalidRequestError(f"{name} is required")
    return value


@app.get("/stream.m3u8", dependencies=[Depends(verify_access)])
async def stream_master(
    request: Request,
    mediaId: Optional[str] = Query(None),
    contentId: Optional[str] = Query(None),
    team: Optional[str] = Query(None),
    date: Optional[str] = Query(None, description="today, yesterday or YYYY-MM-DD"),
    game: Optional[str] = Query(None, description="2 for the second game of a double-header"),
    mediaType: str = Query(VALID_MEDIA_TYPES[0]),
    stream_type: Optional[str] = Query(None, alias="type", description="biginning for MLB Big Inning"),
    src: Optional[str] = Query(None),
    highlight_src: Optional[str] = Query(None),
    resolution: Optional[str] = Query(None),
    audio_track: Optional[str] = Query(None),
    audio_url: Optional[str] = Query(None),
    inning_half: Optional[str] = Query(None),
    inning_number: Optional[str] = Query(None),
    skip: Optional[str] = Query(None),
    skip_adjust: Optional[str] = Query(None),
    force_vod: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services)
):
    """Resolve a broadcast and serve its rewritten master playlist"""
    logger.debug(f"stream.m3u8 request: {request.url}")
    try:
        content_protect = services.content_protect()
        content_id = contentId
        game_number = _number("game", game, int)
        adjust = _number("skip_adjust", skip_adjust, float, 0)

        selectors = [team, src, highlight_src, stream_type, mediaId, contentId]
        if not any(selectors) or (services.preferences.scan_mode and team):
            logger.info("Loading sample stream")
            stream_url = SAMPLE_STREAM_URL
            options = PlaylistOptions(resolution="adaptive", content_protect=content_protect)
        else:
            if resolution == "best":
                resolution = VALID_RESOLUTIONS[1]
            options = PlaylistOptions(
                resolution=resolution,
                audio_track=audio_track,
                force_vod=force_vod,
                inning_half=inning_half,
                inning_number=inning_number,
                skip=skip,
                content_protect=content_protect,
            )

            if src:
                stream_url = src
            elif highlight_src:
                stream_url = highlight_src
            elif stream_type and stream_type.upper() == "BIGINNING":
                playback_url = await services.data.get_big_inning_url()
                if not playback_url:
                    logger.info("Big Inning is not on air")
                    return PlainTextResponse("")
                stream_url = await services.tokens.resolve_big_inning_stream_url(playback_url)
            else:
                media_id = mediaId
                if not media_id and contentId:
                    media_id = await services.data.get_media_id_from_content_id(contentId)
                elif not media_id and team:
                    media = await services.data.find_media(team, mediaType, date, game_number)
                    if media:
                        media_id = media["mediaId"]
                        content_id = media["contentId"]
                if not media_id:
                    logger.info(f"Failed to get mediaId for {request.url}")
                    return PlainTextResponse("")
                logger.debug(f"mediaId: {media_id}")
                stream_url = await services.tokens.resolve_stream_url(media_id, content_id)

            if "master_radio_" in stream_url:
                options.resolution = "adaptive"

            if audio_url:
                audio_source = urljoin(str(request.base_url), audio_url)
                options.audio_url = await resolve_audio_playlist_url(services.client, audio_source)

            if (options.wants_innings or options.wants_skip) and content_id:
                options.content_id = content_id
                await services.offsets.compute(content_id, options.skip_types, adjust)

        logger.debug(f"Using stream URL: {stream_url}")
        content = await services.client.get_text(stream_url)
        return playlist_response(MasterPlaylistRewriter(stream_url, options).rewrite(content))

    except Exception as e:
        return handle_failure("stream request", e)


@app.get("/playlist", dependencies=[Depends(verify_access)])
async def variant_playlist(
    url: Optional[str] = Query(None, description="Upstream variant playlist URL"),
    force_vod: Optional[str] = Query(None),
    inning_half: Optional[str] = Query(None),
    inning_number: Optional[str] = Query(None),
    skip: Optional[str] = Query(None),
    contentId: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services)
):
    """Serve a rewritten variant playlist"""
    logger.debug(f"Playlist request: {url}")
    try:
        url = _required("url", url)
        options = PlaylistOptions(
            force_vod=force_vod,
            inning_half=inning_half,
            inning_number=inning_number,
            skip=skip,
            content_id=contentId,
            content_protect=services.content_protect(),
        )
        offsets = None
        if options.wants_innings or options.wants_skip:
            offsets = services.offsets.get(contentId)
        content = await services.client.get_text(url)
        return playlist_response(VariantPlaylistRewriter(url, options, offsets).rewrite(content))

    except Exception as e:
        return handle_failure("playlist request", e)


@app.get("/ts", dependencies=[Depends(verify_access)])
async def media_segment(
    url: Optional[str] = Query(None, description="Upstream segment URL"),
    key: Optional[str] = Query(None, description="Key URL"),
    iv: Optional[str] = Query(None, description="Hex IV"),
    services: GatewayServices = Depends(get_services)
):
    """Serve one segment, decrypted when a key is given"""
    logger.debug(f"ts request: {url}")
    try:
        data = await services.segments.fetch_segment(_required("url", url), key, iv)
        return _with_cors(Response(content=data, media_type="video/mp2t"))
    except Exception as e:
        return handle_failure("segment request", e)


@app.get("/multiview", dependencies=[Depends(verify_access)])
async def multiview(
    streams: Optional[List[str]] = Query(None),
    sync: Optional[List[str]] = Query(None),
    dvr: Optional[str] = Query(None),
    faster: Optional[str] = Query(None),
    audio_url: Optional[str] = Query(None),
    audio_url_seek: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services)
):
    """Start (or, without streams, stop) the multiview composition"""
    try:
        stream_urls = _split_list(streams)
        if not stream_urls:
            return PlainTextResponse(await services.composer.stop())

        spec = MultiviewSpec(
            streams=stream_urls,
            sync=[float(value) for value in _split_list(sync)],
            dvr=_flag(dvr),
            faster=_flag(faster),
            audio_url=audio_url,
            audio_url_seek=_number("audio_url_seek", audio_url_seek, float, 0),
        )
        result = await services.composer.start(spec)
        services.preferences.set_multiview_path(f"/multiview/{services.composer.master_name}")
        return PlainTextResponse(result)

    except (ValidationError, ValueError) as e:
        logger.warning(f"Invalid multiview request: {e}")
        return PlainTextResponse("multiview request error, check log")
    except Exception as e:
        return handle_failure("multiview request", e, "multiview request error, check log")


@app.get("/multiview/status", response_model=MultiviewStatusResponse, dependencies=[Depends(verify_access)])
async def multiview_status(services: GatewayServices = Depends(get_services)):
    return services.composer.describe()


def _multiview_url(request: Request, services: GatewayServices) -> Optional[str]:
    path = services.preferences.multiview_path
    if not path:
        return None
    host = urlparse(str(request.base_url)).hostname or "localhost"
    return f"{request.url.scheme}://{host}:{settings.multiview_port}{path}"


def _team_list(value: Optional[str]) -> List[str]:
    return [team for team in (value or "").upper().split(",") if team]


@app.get("/channels.m3u", dependencies=[Depends(verify_access)])
async def channels_playlist(
    request: Request,
    mediaType: str = Query(VALID_MEDIA_TYPES[0]),
    includeTeams: Optional[str] = Query(None),
    excludeTeams: Optional[str] = Query(None),
    resolution: str = Query("best"),
    startingChannelNumber: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services)
):
    """M3U channel list for IPTV clients"""
    logger.info(f"channels.m3u request: {request.url}")
    try:
        if resolution == "best":
            resolution = VALID_RESOLUTIONS[1]
        weeks = await services.data.get_weeks_data()
        body = build_channels(
            weeks,
            server=str(request.base_url).rstrip("/"),
            media_type=mediaType,
            include_teams=_team_list(includeTeams),
            exclude_teams=_team_list(excludeTeams),
            resolution=resolution,
            starting_channel_number=_number("startingChannelNumber", startingChannelNumber, int, 1),
            content_protect=services.content_protect(),
            multiview_url=_multiview_url(request, services),
            big_inning=True,
        )
        return Response(content=body, media_type="audio/x-mpegurl")
    except Exception as e:
        return handle_failure("channels request", e)


@app.get("/guide.xml", dependencies=[Depends(verify_access)])
async def guide(
    request: Request,
    mediaType: str = Query(VALID_MEDIA_TYPES[0]),
    includeTeams: Optional[str] = Query(None),
    excludeTeams: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services)
):
    """XMLTV guide matching channels.m3u"""
    logger.info(f"guide.xml request: {request.url}")
    try:
        weeks = await services.data.get_weeks_data()
        big_inning_schedule = None
        if mediaType == "Video":
            try:
                big_inning_schedule = await services.data.get_big_inning_schedule()
            except GatewayError as e:
                logger.warning(f"Big Inning schedule unavailable, leaving it out of the guide: {e}")
        body = build_guide(
            weeks,
            media_type=mediaType,
            include_teams=_team_list(includeTeams),
            exclude_teams=_team_list(excludeTeams),
            multiview_url=_multiview_url(request, services),
            big_inning_schedule=big_inning_schedule,
        )
        return Response(content=body, media_type="application/xml")
    except Exception as e:
        return handle_failure("guide request", e)


@app.get("/highlights", dependencies=[Depends(verify_access)])
async def highlights(
    gamePk: Optional[str] = Query(None),
    gameDate: Optional[str] = Query(None, description="YYYY-MM-DD"),
    services: GatewayServices = Depends(get_services)
):
    """Highlight clips for a game, oldest first"""
    try:
        items = await services.data.get_highlights_data(_required("gamePk", gamePk),
                                                        _required("gameDate", gameDate))
        result = []
        for item in items:
            playbacks = item.get("playbacks") or []
            url = next((p.get("url") for p in playbacks if (p.get("url") or "").endswith(".m3u8")), None)
            if url is None and playbacks:
                url = playbacks[0].get("url")
            result.append({
                "headline": item.get("headline"),
                "description": item.get("description"),
                "date": item.get("date"),
                "url": url,
            })
        return result
    except Exception as e:
        handle_failure("highlights request", e)
        return []


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    services = getattr(request.app.state, "services", None)
    return {
        "status": "ok",
        "version": VERSION,
        "multiview": services.composer.status.value if services else None,
    }


@app.post("/clear_cache", dependencies=[Depends(verify_access)])
async def clear_cache(services: GatewayServices = Depends(get_services)):
    services.cache.clear()
    logger.info("Cache cleared")
    return {"status": "cleared"}


@app.post("/clear_session", dependencies=[Depends(verify_access)])
async def clear_session(services: GatewayServices = Depends(get_services)):
    services.tokens.clear_session()
    return {"status": "cleared"}


# Separate listener serving the multiview output directory as its own HLS feed
multiview_app = FastAPI(title="mlb-proxy multiview", version=VERSION, docs_url=None, redoc_url=None, openapi_url=None)
multiview_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["*"],
)
multiview_app.mount(
    "/multiview",
    StaticFiles(directory=settings.MULTIVIEW_DIR, check_dir=False),
    name="multiview",
)
