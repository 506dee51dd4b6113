"""Import music links shared in Slack channels over the past days.

Usage:
    SLACK_BOT_TOKEN=xoxb-... python scripts/backfill_shares.py C123 C456
    SLACK_BOT_TOKEN=xoxb-... CHANNELS=C123,C456 python scripts/backfill_shares.py --days 14

Rows go through the same insert-if-absent store as the live responder, so
re-running the script (or overlapping with live traffic) never duplicates a
share. No Slack replies are posted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.link_bot import (  # noqa: E402
    Failed,
    LinkResolver,
    Resolved,
    SharedSongIn,
    extract_music_urls,
)

logger = logging.getLogger(__name__)

SLACK_API_URL = os.getenv("SLACK_API_URL", "https://slack.com/api")
HISTORY_PAGE_LIMIT = 200
LOOKUP_PAUSE_SECONDS = 0.5


def fetch_channel_history(
    channel: str,
    token: str,
    oldest: float,
    *,
    http: Any = requests,
) -> List[Dict[str, Any]]:
    """Return user-authored messages newer than ``oldest`` for one channel."""

    messages: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    while True:
        params = {"channel": channel, "oldest": str(int(oldest)), "limit": HISTORY_PAGE_LIMIT}
        if cursor:
            params["cursor"] = cursor
        resp = http.get(
            f"{SLACK_API_URL}/conversations.history",
            params=params,
            headers={"Authorization": f"Bearer {token}"},
            timeout=10,
        )
        data = resp.json()
        if not data.get("ok"):
            logger.error("Error fetching channel %s: %s", channel, data.get("error"))
            break
        messages.extend(m for m in data.get("messages") or [] if m.get("user") and not m.get("bot_id"))
        cursor = (data.get("response_metadata") or {}).get("next_cursor")
        if not cursor:
            break
    logger.info("Found %s user messages in %s", len(messages), channel)
    return messages


def ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).replace(tzinfo=None)


def collect_links(channel: str, messages: Iterable[Dict[str, Any]]) -> List[tuple[str, Dict[str, Any]]]:
    seen: set[str] = set()
    links: List[tuple[str, Dict[str, Any]]] = []
    for message in messages:
        if not message.get("text") or not message.get("user"):
            continue
        for url in extract_music_urls(message["text"]):
            key = f"{channel}:{message['ts']}:{url}"
            if key in seen:
                continue
            seen.add(key)
            links.append((url, message))
    return links


def share_from_outcome(url: str, outcome: Any, channel: str, message: Dict[str, Any]) -> SharedSongIn:
    resolved = outcome if isinstance(outcome, Resolved) else None
    return SharedSongIn(
        original_url=url,
        songlink_url=resolved.canonical_url if resolved else None,
        youtube_url=resolved.video_url if resolved else None,
        title=resolved.title if resolved else None,
        shared_by=message["user"],
        channel=channel,
        message_ts=message["ts"],
    )


async def backfill(
    channel_messages: Dict[str, List[Dict[str, Any]]],
    store: Any,
    *,
    resolver: Optional[LinkResolver] = None,
    pause: float = LOOKUP_PAUSE_SECONDS,
    dry_run: bool = False,
) -> List[SharedSongIn]:
    """Resolve every link in ``channel_messages`` and record it in ``store``."""

    songs: List[SharedSongIn] = []
    session: Optional[aiohttp.ClientSession] = None
    if resolver is None:
        session = aiohttp.ClientSession()
        resolver = LinkResolver(session)
    try:
        for channel, messages in channel_messages.items():
            for url, message in collect_links(channel, messages):
                logger.info("Processing %s", url[:60])
                if pause:
                    await asyncio.sleep(pause)
                try:
                    outcome = await resolver.resolve(url)
                except Exception:
                    logger.warning("Error fetching song.link data for %s", url, exc_info=True)
                    outcome = None
                if isinstance(outcome, Failed):
                    logger.info("song.link %s for %s", outcome.reason, url)
                song = share_from_outcome(url, outcome, channel, message)
                songs.append(song)
                if not dry_run:
                    store.record(song, shared_at=ts_to_datetime(song.message_ts))
    finally:
        if session is not None:
            await session.close()
    return songs


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill shared music links from Slack history")
    parser.add_argument("channels", nargs="*", help="Slack channel IDs (defaults to $CHANNELS)")
    parser.add_argument("--days", type=int, default=7, help="how far back to scan")
    parser.add_argument("--dry-run", action="store_true", help="print shares without writing")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format="%(levelname)s %(message)s")
    args = _parse_args(argv)
    token = os.getenv("SLACK_BOT_TOKEN")
    if not token:
        logger.error("SLACK_BOT_TOKEN environment variable is required")
        return 1
    channels = args.channels or [c.strip() for c in os.getenv("CHANNELS", "").split(",") if c.strip()]
    if not channels:
        logger.error("No channel IDs provided")
        return 1

    from songshare_app import SqlShareStore

    oldest = time.time() - args.days * 24 * 60 * 60
    history = {channel: fetch_channel_history(channel, token, oldest) for channel in channels}
    songs = asyncio.run(backfill(history, SqlShareStore(), dry_run=args.dry_run))
    print(f"Found {len(songs)} songs.")
    for song in songs:
        print(f"  - {song.title or song.original_url[:50]}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
