"""
Small JSON-backed records: credentials, durable session state and
user preferences. Each record is its own file and can be cleared
independently of the others.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional

from storage import read_json, remove_path, write_json

logger = logging.getLogger(__name__)


class JsonRecord:
    """A dict persisted to a single JSON file on every change."""

    def __init__(self, path: str):
        self.path = path
        self.data: Dict[str, Any] = read_json(path, {}) or {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any):
        self.data[key] = value
        self.save()

    def update(self, values: Dict[str, Any]):
        self.data.update(values)
        self.save()

    def pop(self, key: str):
        if key in self.data:
            del self.data[key]
            self.save()

    def save(self):
        write_json(self.path, self.data)

    def clear(self):
        self.data = {}
        remove_path(self.path)


class CredentialStore(JsonRecord):
    """Account username/password; explicit settings take precedence over the file."""

    def __init__(self, path: str, username: Optional[str] = None, password: Optional[str] = None):
        super().__init__(path)
        if username and password:
            self.data["account_username"] = username
            self.data["account_password"] = password

    @property
    def username(self) -> Optional[str]:
        return self.data.get("account_username")

    @property
    def password(self) -> Optional[str]:
        return self.data.get("account_password")

    def is_complete(self) -> bool:
        return bool(self.username and self.password)

    def store(self, username: str, password: str):
        self.update({"account_username": username, "account_password": password})


class SessionStore(JsonRecord):
    """
    Durable token state (device id, stream access token + expiry), scraped
    API keys, blackout records and the content protection key.
    """

    def blackouts(self) -> List[str]:
        return list(self.data.get("blackouts", []))

    def add_blackout(self, media_id: str):
        blackouts = self.blackouts()
        if media_id not in blackouts:
            blackouts.append(media_id)
            self.set("blackouts", blackouts)

    def content_protect(self) -> str:
        """Key appended to rewritten URLs so players can pass the access guard."""
        key = self.data.get("content_protect")
        if not key:
            key = secrets.token_hex(16)
            self.set("content_protect", key)
        return key


class PreferencesStore(JsonRecord):
    """User preferences that outlive a session reset."""

    @property
    def scan_mode(self) -> bool:
        return self.data.get("scan_mode", "off") == "on"

    def set_scan_mode(self, enabled: bool):
        self.set("scan_mode", "on" if enabled else "off")

    @property
    def multiview_path(self) -> Optional[str]:
        return self.data.get("multiview_stream_path")

    def set_multiview_path(self, path: Optional[str]):
        if path:
            self.set("multiview_stream_path", path)
        else:
            self.pop("multiview_stream_path")
