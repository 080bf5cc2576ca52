#!/usr/bin/env python3
"""
mlb-proxy - Main Entry Point
A personal MLB.tv gateway that re-serves broadcasts as local HLS streams.
"""

import argparse
import asyncio
import logging
import os
import sys

import uvicorn

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from config import settings, VERSION
from cache_store import CacheStore
from storage import ensure_directory, remove_path
from stores import CredentialStore


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="mlb-proxy: personal MLB.tv HLS gateway")
    parser.add_argument("--logout", action="store_true", help="forget stored credentials and session")
    parser.add_argument("--session", action="store_true", help="clear session data (tokens, blackouts)")
    parser.add_argument("--cache", action="store_true", help="clear cached schedule and airing data")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="store_true", help="print the version and exit")
    return parser.parse_args(argv)


async def serve():
    """Run the gateway and the multiview static server on one event loop."""
    gateway = uvicorn.Server(uvicorn.Config(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.log_level,
    ))
    multiview = uvicorn.Server(uvicorn.Config(
        "api:multiview_app",
        host=settings.HOST,
        port=settings.multiview_port,
        log_level=settings.log_level,
    ))
    await asyncio.gather(gateway.serve(), multiview.serve())


def main(argv=None):
    """Main function to start the mlb-proxy server."""
    args = parse_args(argv)
    if args.version:
        print(VERSION)
        return 0
    if args.debug:
        settings.DEBUG = True

    # Configure logging
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger(__name__)

    if args.logout:
        remove_path(settings.credentials_file)
        remove_path(settings.session_file)
        logger.info("Logged out: credentials and session removed")
    elif args.session:
        remove_path(settings.session_file)
        logger.info("Session cleared")
    if args.cache:
        CacheStore(settings.CACHE_DIR).clear()
        logger.info("Cache cleared")

    credentials = CredentialStore(settings.credentials_file, settings.ACCOUNT_USERNAME, settings.ACCOUNT_PASSWORD)
    if not credentials.is_complete():
        logger.critical(
            f"❌ Missing account credentials: set ACCOUNT_USERNAME/ACCOUNT_PASSWORD "
            f"or store them in {settings.credentials_file}")
        return 1

    for directory in (settings.DATA_DIR, settings.CACHE_DIR, settings.MULTIVIEW_DIR):
        ensure_directory(directory)

    logger.info("=" * 60)
    logger.info(f"⚡️ Starting mlb-proxy v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info(f"🎬 Multiview output served on port {settings.multiview_port}")
    logger.info("=" * 60)
    logger.info(f"ℹ️  Log level set to: {settings.log_level}")
    if settings.protection_enabled:
        logger.info("🔒 Page protection enabled")

    asyncio.run(serve())
    return 0


if __name__ == "__main__":
    sys.exit(main())
