"""
Segment fetch and AES-128-CBC decryption.
"""

import logging
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from cache_store import MemoryCache
from errors import MalformedDataError
from http_client import UpstreamClient

logger = logging.getLogger(__name__)


def parse_iv(iv_hex: str) -> bytes:
    """Decode a hex IV (with or without 0x), left-padded to a full block."""
    if iv_hex.lower().startswith("0x"):
        iv_hex = iv_hex[2:]
    try:
        iv = bytes.fromhex(iv_hex)
    except ValueError:
        raise MalformedDataError(f"invalid IV {iv_hex!r}")
    if len(iv) > AES.block_size:
        raise MalformedDataError(f"IV too long: {iv_hex!r}")
    return b"\x00" * (AES.block_size - len(iv)) + iv


def decrypt_segment(data: bytes, key: bytes, iv: bytes) -> bytes:
    if len(data) % AES.block_size:
        raise MalformedDataError(f"encrypted segment length {len(data)} is not a multiple of the block size")
    decryptor = AES.new(key, AES.MODE_CBC, iv)
    try:
        return unpad(decryptor.decrypt(data), AES.block_size, style="pkcs7")
    except ValueError as e:
        raise MalformedDataError(f"bad segment padding: {e}")


class SegmentFetcher:
    """Fetches media segments, decrypting them when a key is referenced."""

    def __init__(self, client: UpstreamClient, key_cache: Optional[MemoryCache] = None):
        self.client = client
        # Key bytes never change for a given key URL, so they are kept for the process lifetime
        self.key_cache = key_cache if key_cache is not None else MemoryCache()

    async def get_key(self, key_url: str) -> bytes:
        key = self.key_cache.get(key_url)
        if key is None:
            logger.debug(f"Key request: {key_url}")
            key = await self.client.get_bytes(key_url)
            if len(key) != 16:
                raise MalformedDataError(f"key from {key_url} is {len(key)} bytes, expected 16")
            self.key_cache.put(key_url, key)
        return key

    async def fetch_segment(self, url: str, key_url: Optional[str] = None, iv_hex: Optional[str] = None) -> bytes:
        """
        Fetch one segment, decrypted with AES-128-CBC when a key URL is given.

        Args:
            url: Upstream segment URL
            key_url: Key URL from the playlist's key tag
            iv_hex: Hex IV; all zeros when absent

        Returns:
            Raw or decrypted segment bytes
        """
        data = await self.client.get_bytes(url)
        if not key_url:
            return data

        key = await self.get_key(key_url)
        iv = parse_iv(iv_hex or "")
        logger.debug(f"Decrypting {len(data)} bytes with iv 0x{iv.hex()}")
        return decrypt_segment(data, key, iv)
