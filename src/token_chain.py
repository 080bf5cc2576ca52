"""
Token Chain Manager

Stream URLs are only handed out against a stream-access token, which is the
last link of a chain of credential exchanges:

    device assertion -> device access token -> device id
    account login (authn session token) -> okta access token
    (okta token + device id) -> entitlement token -> stream access token

Every link is resolved lazily. A valid link is reused; an expired or missing
one is regenerated, which in turn resolves only the links it needs. Only the
device id and the stream access token survive a restart.
"""

import base64
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from errors import AuthRejectedError, BlackoutError, ConfigurationError, MalformedDataError, UpstreamError
from expiry import parse_timestamp, utcnow
from http_client import UpstreamClient
from stores import CredentialStore, SessionStore

logger = logging.getLogger(__name__)

PLATFORM = "macintosh"
BAM_SDK_VERSION = "4.3"
ORIGIN = "https://www.mlb.com"

API_KEYS_URL = "https://www.mlb.com/tv/g632102/"
OKTA_SCRIPT_URL = "https://www.mlbstatic.com/mlb.com/vendor/mlb-okta/mlb-okta.js"
DEVICES_URL = "https://us.edge.bamgrid.com/devices"
BAM_TOKEN_URL = "https://us.edge.bamgrid.com/token"
SESSION_URL = "https://us.edge.bamgrid.com/session"
AUTHN_URL = "https://ids.mlb.com/api/v1/authn"
AUTHORIZE_URL = "https://ids.mlb.com/oauth2/aus1m088yK07noBfh356/v1/authorize"
ENTITLEMENT_URL = "https://media-entitlement.mlb.com/api/v3/jwt"
PLAYBACK_URL = "https://edge.svcs.mlb.com/media/{media_id}/scenarios/browser~csai"

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
DEVICE_TOKEN_TYPE = "urn:bamtech:params:oauth:token-type:device"
ACCOUNT_TOKEN_TYPE = "urn:bamtech:params:oauth:token-type:account"

STREAM_URL_LIFETIME = timedelta(seconds=60)
BIG_INNING_MEDIA_ID = "BIGINNING"

# Chain order; each link names the link it consumes (retried once on rejection)
CHAIN = (
    "deviceAssertion",
    "deviceAccessToken",
    "deviceId",
    "authnSessionToken",
    "oktaAccessToken",
    "entitlementToken",
    "streamAccessToken",
)
DEPENDS_ON = {
    "deviceAssertion": None,
    "deviceAccessToken": "deviceAssertion",
    "deviceId": "deviceAccessToken",
    "authnSessionToken": None,
    "oktaAccessToken": "authnSessionToken",
    "entitlementToken": "oktaAccessToken",
    "streamAccessToken": "entitlementToken",
}
PERSISTED = ("deviceId", "streamAccessToken")


@dataclass
class TokenRecord:
    value: Optional[str] = None
    expiry: Optional[datetime] = None  # None means valid until invalidated

    def is_valid(self, now: datetime) -> bool:
        return bool(self.value) and (self.expiry is None or now < self.expiry)


@dataclass
class StreamDescriptor:
    media_id: str
    resolved_url: str
    url_expiry: datetime
    content_id: Optional[str] = None


class TokenChainState:
    """In-memory token records, with the durable ones mirrored to the session store."""

    def __init__(self, session: SessionStore):
        self.session = session
        self.tokens: Dict[str, TokenRecord] = {name: TokenRecord() for name in CHAIN}
        self._load()

    def _load(self):
        device_id = self.session.get("deviceId")
        if device_id:
            self.tokens["deviceId"] = TokenRecord(device_id)

        token = self.session.get("streamAccessToken")
        expiry = self.session.get("streamAccessTokenExpiry")
        if token and expiry:
            try:
                self.tokens["streamAccessToken"] = TokenRecord(token, parse_timestamp(expiry))
            except ValueError:
                logger.warning("Ignoring stored stream access token with unreadable expiry")

    def get(self, name: str) -> TokenRecord:
        return self.tokens[name]

    def set(self, name: str, value: str, expiry: Optional[datetime] = None):
        self.tokens[name] = TokenRecord(value, expiry)
        if name == "deviceId":
            self.session.set("deviceId", value)
        elif name == "streamAccessToken":
            self.session.update({
                "streamAccessToken": value,
                "streamAccessTokenExpiry": expiry.isoformat() if expiry else None,
            })

    def invalidate(self, name: str):
        self.tokens[name] = TokenRecord()
        if name in PERSISTED:
            self.session.pop(name)
            if name == "streamAccessToken":
                self.session.pop("streamAccessTokenExpiry")

    def reset(self):
        self.tokens = {name: TokenRecord() for name in CHAIN}


def _jwt_expiry(token: str) -> Optional[datetime]:
    """Read the exp claim of a JWT without verifying it."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (ValueError, KeyError, TypeError):
        return None


class TokenChainManager:
    """Produces and refreshes the credentials needed to resolve stream URLs."""

    def __init__(self,
                 client: UpstreamClient,
                 session: SessionStore,
                 credentials: CredentialStore,
                 clock: Callable[[], datetime] = utcnow):
        self.client = client
        self.session = session
        self.credentials = credentials
        self.clock = clock
        self.state = TokenChainState(session)
        self.stream_urls: Dict[str, StreamDescriptor] = {}
        self._producers: Dict[str, Callable[[], Awaitable[Tuple[Optional[str], Optional[datetime]]]]] = {
            "deviceAssertion": self._fetch_device_assertion,
            "deviceAccessToken": self._fetch_device_access_token,
            "deviceId": self._fetch_device_id,
            "authnSessionToken": self._fetch_authn_session_token,
            "oktaAccessToken": self._fetch_okta_access_token,
            "entitlementToken": self._fetch_entitlement_token,
            "streamAccessToken": self._fetch_stream_access_token,
        }

    # ------------------------------------------------------------------
    # Chain walking
    # ------------------------------------------------------------------

    async def _with_retry(self, depends_on: Optional[str], func: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run `func`; on rejection, invalidate the token it consumed and try exactly once more."""
        try:
            return await func(*args)
        except AuthRejectedError as e:
            if not depends_on:
                raise
            logger.warning(f"Upstream rejected {depends_on}, regenerating it once: {e}")
            self.state.invalidate(depends_on)
            return await func(*args)

    async def resolve(self, name: str) -> str:
        """Return a valid value for one chain link, regenerating it if needed."""
        record = self.state.get(name)
        if record.is_valid(self.clock()):
            return record.value

        logger.debug(f"Need new {name}")
        value, expiry = await self._with_retry(DEPENDS_ON[name], self._producers[name])
        if not value:
            raise ConfigurationError(f"missing {name}")

        self.state.set(name, value, expiry)
        return value

    def invalidate(self, name: str):
        self.state.invalidate(name)

    async def get_stream_access_token(self) -> str:
        return await self.resolve("streamAccessToken")

    # ------------------------------------------------------------------
    # API keys scraped from public pages
    # ------------------------------------------------------------------

    async def api_key(self, name: str) -> str:
        value = self.session.get(name)
        if not value:
            if name == "oktaClientId":
                await self._scrape_okta_client_id()
            else:
                await self._scrape_api_keys()
            value = self.session.get(name)
        if not value:
            raise ConfigurationError(f"missing {name}")
        return value

    async def _scrape_api_keys(self):
        logger.debug("Fetching API keys")
        page = await self.client.get_text(API_KEYS_URL, headers={"Origin": ORIGIN})
        found = {}
        match = re.search(r'"x-api-key","value":"([^"]+)"', page)
        if match:
            found["xApiKey"] = match.group(1)
        match = re.search(r'"clientApiKey":"([^"]+)"', page)
        if match:
            found["clientApiKey"] = match.group(1)
        if found:
            self.session.update(found)

    async def _scrape_okta_client_id(self):
        logger.debug("Fetching okta client id")
        script = await self.client.get_text(OKTA_SCRIPT_URL, headers={"Origin": ORIGIN})
        match = re.search(r'production:\{clientId:"([^"]+)",', script)
        if match:
            self.session.set("oktaClientId", match.group(1))

    # ------------------------------------------------------------------
    # Chain links
    # ------------------------------------------------------------------

    def _expires_in(self, seconds: Any) -> Optional[datetime]:
        try:
            return self.clock() + timedelta(seconds=float(seconds))
        except (TypeError, ValueError):
            return None

    async def _fetch_device_assertion(self):
        client_api_key = await self.api_key("clientApiKey")
        response = await self.client.post(
            DEVICES_URL,
            headers={"Authorization": f"Bearer {client_api_key}", "Origin": ORIGIN},
            json={
                "applicationRuntime": "firefox",
                "attributes": {},
                "deviceFamily": "browser",
                "deviceProfile": "macosx",
            })
        data = self.client.parse_json(response)
        return data.get("assertion"), None

    async def _fetch_device_access_token(self):
        client_api_key = await self.api_key("clientApiKey")
        assertion = await self.resolve("deviceAssertion")
        response = await self.client.post(
            BAM_TOKEN_URL,
            headers={"Authorization": f"Bearer {client_api_key}", "Origin": ORIGIN},
            data={
                "grant_type": TOKEN_EXCHANGE_GRANT,
                "latitude": "0",
                "longitude": "0",
                "platform": "browser",
                "subject_token": assertion,
                "subject_token_type": DEVICE_TOKEN_TYPE,
            })
        # An assertion is only good for one exchange
        self.state.invalidate("deviceAssertion")
        data = self.client.parse_json(response)
        return data.get("access_token"), self._expires_in(data.get("expires_in"))

    async def _fetch_device_id(self):
        device_token = await self.resolve("deviceAccessToken")
        response = await self.client.get(
            SESSION_URL,
            headers={
                "Authorization": device_token,
                "Origin": ORIGIN,
                "Accept": "application/vnd.session-service+json; version=1",
                "x-bamsdk-version": BAM_SDK_VERSION,
                "x-bamsdk-platform": PLATFORM,
            })
        data = self.client.parse_json(response)
        return (data.get("device") or {}).get("id"), None

    async def _fetch_authn_session_token(self):
        if not self.credentials.username:
            raise ConfigurationError("missing account username")
        if not self.credentials.password:
            raise ConfigurationError("missing account password")

        logger.info("Logging in...")
        response = await self.client.post(
            AUTHN_URL,
            headers={"Content-Type": "application/json"},
            json={
                "username": self.credentials.username,
                "password": self.credentials.password,
                "options": {
                    "multiOptionalFactorEnroll": False,
                    "warnBeforePasswordExpired": True,
                },
            })
        data = self.client.parse_json(response)
        return data.get("sessionToken"), None

    async def _fetch_okta_access_token(self):
        client_id = await self.api_key("oktaClientId")
        session_token = await self.resolve("authnSessionToken")
        response = await self.client.get(
            AUTHORIZE_URL,
            headers={"Accept-Encoding": "identity"},
            params={
                "client_id": client_id,
                "redirect_uri": "https://www.mlb.com/login",
                "response_type": "id_token token",
                "response_mode": "okta_post_message",
                "state": secrets.token_urlsafe(48),
                "nonce": secrets.token_urlsafe(48),
                "prompt": "none",
                "sessionToken": session_token,
                "scope": "openid email",
            })
        body = response.text
        if "data.error = 'login_required'" in body:
            raise AuthRejectedError("okta login required", url=AUTHORIZE_URL)

        token = re.search(r"data\.access_token = '([^']+)'", body)
        expires_in = re.search(r"data\.expires_in = '([^']+)'", body)
        if not token or not expires_in:
            raise MalformedDataError("okta authorize response did not contain an access token")
        return token.group(1).replace("\\x2D", "-"), self._expires_in(expires_in.group(1))

    async def _fetch_entitlement_token(self):
        okta_token = await self.resolve("oktaAccessToken")
        x_api_key = await self.api_key("xApiKey")
        device_id = await self.resolve("deviceId")
        response = await self.client.get(
            ENTITLEMENT_URL,
            headers={
                "Authorization": f"Bearer {okta_token}",
                "Origin": ORIGIN,
                "x-api-key": x_api_key,
            },
            params={"os": PLATFORM, "did": device_id, "appname": "mlbtv_web"})
        token = response.text.strip()
        # Tokens without a readable exp claim are used once
        return token, _jwt_expiry(token) or self.clock()

    async def _fetch_stream_access_token(self):
        client_api_key = await self.api_key("clientApiKey")
        entitlement = await self.resolve("entitlementToken")
        response = await self.client.post(
            BAM_TOKEN_URL,
            headers={
                "Authorization": f"Bearer {client_api_key}",
                "Origin": ORIGIN,
                "Accept": "application/vnd.media-service+json; version=1",
                "x-bamsdk-version": BAM_SDK_VERSION,
                "x-bamsdk-platform": PLATFORM,
            },
            data={
                "grant_type": TOKEN_EXCHANGE_GRANT,
                "platform": "browser",
                "subject_token": entitlement,
                "subject_token_type": ACCOUNT_TOKEN_TYPE,
            })
        data = self.client.parse_json(response)
        return data.get("access_token"), self._expires_in(data.get("expires_in"))

    # ------------------------------------------------------------------
    # Stream URL lookup
    # ------------------------------------------------------------------

    def is_blacked_out(self, media_id: str) -> bool:
        return media_id in self.session.blackouts()

    def clear_blackouts(self):
        self.session.pop("blackouts")

    async def resolve_stream_url(self, media_id: str, content_id: Optional[str] = None) -> str:
        """
        Resolve the playable master playlist URL for a media id.

        Raises:
            BlackoutError: if the media id is (or just became) blacked out
            ConfigurationError: if a chain link cannot be produced
            UpstreamError: if the lookup fails after retries
        """
        if self.is_blacked_out(media_id):
            logger.info(f"Media {media_id} previously blacked out, skipping")
            raise BlackoutError(media_id)

        cached = self.stream_urls.get(media_id)
        if cached and self.clock() < cached.url_expiry:
            logger.debug(f"Using cached stream URL for {media_id}")
            return cached.resolved_url

        data = await self._with_retry("streamAccessToken", self._lookup_stream, media_id)

        errors = data.get("errors") or []
        if errors:
            first = errors[0]
            code = first.get("code") if isinstance(first, dict) else first
            if code == "blackout":
                logger.warning(f"❌ Blackout for media {media_id}")
                self.session.add_blackout(media_id)
                raise BlackoutError(media_id)
            raise UpstreamError(f"stream lookup for {media_id} failed: {errors}")

        url = (data.get("stream") or {}).get("complete")
        if not url:
            raise MalformedDataError(f"stream lookup for {media_id} returned no URL")

        self.stream_urls[media_id] = StreamDescriptor(
            media_id=media_id,
            resolved_url=url,
            url_expiry=self.clock() + STREAM_URL_LIFETIME,
            content_id=content_id,
        )
        return url

    async def _lookup_stream(self, media_id: str) -> Dict[str, Any]:
        token = await self.resolve("streamAccessToken")
        try:
            response = await self.client.get(
                PLAYBACK_URL.format(media_id=media_id),
                headers={
                    "Authorization": token,
                    "Accept": "application/vnd.media-service+json; version=1",
                    "x-bamsdk-version": BAM_SDK_VERSION,
                    "x-bamsdk-platform": PLATFORM,
                    "Origin": ORIGIN,
                })
        except UpstreamError as e:
            # Blackouts can arrive with an error status; the body says which
            if e.body and "blackout" in e.body:
                try:
                    return json.loads(e.body)
                except ValueError:
                    pass
            raise
        return self.client.parse_json(response)

    async def resolve_big_inning_stream_url(self, playback_url: str) -> str:
        """
        Resolve the playable Big Inning playlist behind a live playback URL.

        The playback URL answers either with a JSON envelope naming the
        stream or with the master playlist itself.
        """
        cached = self.stream_urls.get(playback_url)
        if cached and self.clock() < cached.url_expiry:
            logger.debug("Using cached Big Inning stream URL")
            return cached.resolved_url

        response = await self._with_retry("oktaAccessToken", self._lookup_big_inning, playback_url)
        if response.text.startswith("#EXTM3U"):
            url = playback_url
        else:
            data = self.client.parse_json(response)
            if data.get("success") is not True:
                raise UpstreamError(f"Big Inning lookup failed: {data.get('errorCode')} {data.get('message')}")
            try:
                url = data["data"][0]["value"]
            except (KeyError, IndexError, TypeError):
                raise MalformedDataError("Big Inning lookup returned no URL")

        self.stream_urls[playback_url] = StreamDescriptor(
            media_id=BIG_INNING_MEDIA_ID,
            resolved_url=url,
            url_expiry=self.clock() + STREAM_URL_LIFETIME,
        )
        return url

    async def _lookup_big_inning(self, playback_url: str):
        token = await self.resolve("oktaAccessToken")
        return await self.client.get(
            playback_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "*/*",
                "Origin": ORIGIN,
                "Referer": f"{ORIGIN}/",
            })

    # ------------------------------------------------------------------
    # Operator resets
    # ------------------------------------------------------------------

    def clear_session(self):
        """Forget every token, cached stream URL and blackout."""
        self.session.clear()
        self.state.reset()
        self.stream_urls.clear()
        logger.info("Session cleared")

    def logout(self):
        self.credentials.clear()
        self.clear_session()
        logger.info("Logged out")
