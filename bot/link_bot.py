from __future__ import annotations
import asyncio, os, re, html, random, logging
from typing import Optional, Dict, List, Callable, Literal, Union, Protocol, Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import aiohttp
import yaml

logger = logging.getLogger(__name__)

# ---- Env ----
SONGLINK_API_URL = os.getenv('SONGLINK_API_URL', 'https://api.song.link/v1-alpha.1/links')
SONGLINK_USER_COUNTRY = os.getenv('SONGLINK_USER_COUNTRY')
YOUTUBE_SEARCH_URL = os.getenv('YOUTUBE_SEARCH_URL', 'https://www.googleapis.com/youtube/v3/search')
YOUTUBE_API_KEY = os.getenv('YOUTUBE_API_KEY')
SLACK_API_URL = os.getenv('SLACK_API_URL', 'https://slack.com/api')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', 'bot/messages.yml'))
HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '10'))

# Some platforms serve a stripped page (or nothing) to clients they do not recognise.
CRAWLER_USER_AGENT = 'facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)'
YOUTUBE_MUSIC_CATEGORY_ID = '10'
YOUTUBE_WATCH_URL = 'https://www.youtube.com/watch?v={video_id}'

# Domain fragments recognised as music links. Adding a platform is one new entry.
MUSIC_PLATFORM_PATTERNS: List[str] = [
    r'open\.spotify\.com',
    r'music\.apple\.com',
    r'itunes\.apple\.com',
    r'youtube\.com',
    r'youtu\.be',
    r'music\.youtube\.com',
    r'play\.google\.com',
    r'pandora\.com',
    r'deezer\.com',
    r'tidal\.com',
    r'amazon\.com/music',
    r'music\.amazon\.com',
    r'soundcloud\.com',
    r'(?:web\.)?napster\.com',
    r'music\.yandex\.(?:com|ru)',
    r'spinrilla\.com',
    r'audius\.co',
    r'anghami\.com',
    r'boomplay\.com',
    r'audiomack\.com',
    r'[\w-]+\.bandcamp\.com',
    r'bandcamp\.com',
]

# Page titles usually end with the platform name; it is noise for a video search.
TITLE_PLATFORM_NAMES: List[str] = [
    'Spotify',
    'Apple Music',
    'YouTube Music',
    'YouTube',
    'SoundCloud',
    'Deezer',
    'TIDAL',
    'Amazon Music',
    'Pandora',
    'Bandcamp',
    'Napster',
    'Yandex Music',
    'Audius',
    'Anghami',
    'Boomplay',
    'Audiomack',
]

DEFAULT_MESSAGES: Dict[str, str] = {
    'resolved': '🎵 <{songlink_url}>',
    'rate_limited': 'song.link is rate limiting me right now, try again in a minute.',
    'upstream_error': 'song.link could not resolve that link (HTTP {status}).',
    'no_match': 'song.link does not know this one.',
    'fallback_exhausted': 'song.link could not resolve that link (HTTP {status}) and my YouTube search came up empty too.',
    'no_match_exhausted': 'song.link does not know this one and my YouTube search came up empty too.',
    'post_failed': 'Could not post the song link: {error}',
}

DEFAULT_FALLBACK_NOTICES: List[str] = [
    "song.link drew a blank, so I asked YouTube. No promises, I'm just a bot:",
    "Couldn't find a universal link. Here's my best guess, judge me gently:",
    "song.link shrugged at this one. I went digging and found this, maybe:",
    "I tried. song.link didn't. This YouTube result might be it:",
]


def build_music_url_regex(patterns: Iterable[str]) -> re.Pattern:
    domains = '|'.join(patterns)
    return re.compile(rf'(?:https?://)?(?:www\.|m\.)?(?:{domains})/[^\s<>|]+', re.I)


MUSIC_URL_REGEX = build_music_url_regex(MUSIC_PLATFORM_PATTERNS)

_TITLE_RE = re.compile(r'<title[^>]*>(.*?)</title>', re.I | re.S)
_OG_TITLE_RE = re.compile(r'<meta[^>]+property=["\']og:title["\'][^>]+content=["\']([^"\']*)["\']', re.I)
_PLATFORM_SUFFIX_RE = re.compile(
    r'(?:^|\s*(?:[-|–—]|\bon)\s*)(?:' + '|'.join(re.escape(name) for name in TITLE_PLATFORM_NAMES) + r')\s*$',
    re.I,
)


# ---- types ----
FailureReason = Literal['rate_limited', 'upstream_error', 'no_match']


@dataclass(frozen=True)
class Resolved:
    canonical_url: str
    video_url: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class FallbackResolved:
    video_url: str
    title: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    reason: FailureReason
    status: Optional[int] = None
    fallback_attempted: bool = False


ResolutionResult = Union[Resolved, FallbackResolved, Failed]


@dataclass(frozen=True)
class SharedSongIn:
    original_url: str
    songlink_url: Optional[str]
    youtube_url: Optional[str]
    title: Optional[str]
    shared_by: str
    channel: str
    message_ts: str


class ShareStore(Protocol):
    def record(self, song: SharedSongIn) -> None:
        ...


# ---- helpers ----
def extract_music_urls(text: Optional[str]) -> List[str]:
    """Music links in ``text`` in order of appearance, duplicates kept.

    Slack wraps links as ``<url>`` or ``<url|label>``; the matcher stops at
    ``<``, ``>`` and ``|`` so neither the wrapping nor the label is kept.
    """
    if not text:
        return []
    return [m.group(0) for m in MUSIC_URL_REGEX.finditer(text)]


def title_from_songlink(payload: dict) -> Optional[str]:
    entity_id = payload.get('entityUniqueId')
    entities = payload.get('entitiesByUniqueId')
    if entity_id is None or not isinstance(entities, dict) or entity_id not in entities:
        return None
    entity = entities[entity_id] or {}
    artist = entity.get('artistName')
    title = entity.get('title')
    if artist is None or title is None:
        return None
    return f'{artist} - {title}'


def video_url_from_songlink(payload: dict) -> Optional[str]:
    links = payload.get('linksByPlatform')
    if not isinstance(links, dict):
        return None
    for platform in ('youtube', 'youtubeMusic'):
        entry = links.get(platform)
        if isinstance(entry, dict) and entry.get('url') is not None:
            return entry['url']
    return None


def parse_songlink_payload(payload: object) -> ResolutionResult:
    if not isinstance(payload, dict) or payload.get('pageUrl') is None:
        return Failed('no_match', 200)
    return Resolved(
        canonical_url=payload['pageUrl'],
        video_url=video_url_from_songlink(payload),
        title=title_from_songlink(payload),
    )


def search_query_from_html(page: str) -> Optional[str]:
    """Derive a video search query from a page's ``<title>``.

    Falls back to the ``og:title`` meta tag. Returns ``None`` when nothing
    usable is left once the platform suffix is stripped.
    """
    match = _TITLE_RE.search(page) or _OG_TITLE_RE.search(page)
    if not match:
        return None
    title = ' '.join(html.unescape(match.group(1)).split())
    stripped = _PLATFORM_SUFFIX_RE.sub('', title)
    while stripped != title:
        title = stripped
        stripped = _PLATFORM_SUFFIX_RE.sub('', title)
    title = title.strip()
    if len(title) <= 3:
        return None
    return title


def choose_template(templates: List[str], rng: Callable[[], float] = random.random) -> str:
    if not templates:
        raise ValueError('no templates to choose from')
    index = min(int(rng() * len(templates)), len(templates) - 1)
    return templates[index]


def compose_reply(
    outcome: ResolutionResult,
    messages: Dict[str, str],
    fallback_notices: List[str],
    rng: Callable[[], float] = random.random,
) -> str:
    if isinstance(outcome, Resolved):
        text = messages['resolved'].format(songlink_url=outcome.canonical_url)
        if outcome.video_url is not None:
            text += f'\n{outcome.video_url}'
        return text
    if isinstance(outcome, FallbackResolved):
        return f'{choose_template(fallback_notices, rng)}\n{outcome.video_url}'
    if outcome.reason == 'rate_limited':
        return messages['rate_limited']
    if outcome.reason == 'no_match':
        key = 'no_match_exhausted' if outcome.fallback_attempted else 'no_match'
        return messages[key].format(status=outcome.status)
    if outcome.fallback_attempted:
        return messages['fallback_exhausted'].format(status=outcome.status)
    return messages['upstream_error'].format(status=outcome.status)


def load_messages(path: Path) -> tuple[Dict[str, str], List[str]]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    notices = list(DEFAULT_FALLBACK_NOTICES)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return cfg, notices
    custom_notices = data.pop('fallback_notices', None)
    if isinstance(custom_notices, list) and custom_notices:
        notices = [str(n) for n in custom_notices]
    cfg.update({k: str(v) for k, v in data.items()})
    return cfg, notices


def _timeout() -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS)


# ---- song.link ----
class LinkResolver:
    def __init__(self, session: aiohttp.ClientSession, api_url: str = SONGLINK_API_URL,
                 user_country: Optional[str] = SONGLINK_USER_COUNTRY):
        self.session = session
        self.api_url = api_url
        self.user_country = user_country

    def _lookup_url(self, url: str) -> str:
        lookup = f"{self.api_url}?url={quote(url, safe='')}"
        if self.user_country:
            lookup += f"&userCountry={quote(self.user_country, safe='')}"
        return lookup

    async def _fetch(self, url: str) -> tuple[int, object]:
        async with self.session.get(self._lookup_url(url), timeout=_timeout()) as r:
            if r.status >= 400:
                body = await r.text()
                return r.status, body
            return r.status, await r.json(content_type=None)

    async def resolve(self, url: str) -> ResolutionResult:
        status, body = await self._fetch(url)
        if status == 429:
            logger.warning('song.link rate limited lookup for %s', url)
            return Failed('rate_limited', status)
        if status >= 300:
            logger.warning('song.link error %s for %s: %s', status, url, str(body)[:200])
            return Failed('upstream_error', status)
        return parse_songlink_payload(body)


# ---- YouTube fallback ----
class FallbackResolver:
    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str] = YOUTUBE_API_KEY,
                 search_url: str = YOUTUBE_SEARCH_URL):
        self.session = session
        self.api_key = api_key
        self.search_url = search_url

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _fetch_page(self, url: str) -> Optional[str]:
        headers = {'User-Agent': CRAWLER_USER_AGENT}
        async with self.session.get(url, headers=headers, timeout=_timeout()) as r:
            if r.status >= 300:
                logger.info('Fallback page fetch for %s returned %s', url, r.status)
                return None
            return await r.text(errors='replace')

    async def _search(self, query: str) -> Optional[str]:
        params = {
            'part': 'snippet',
            'q': query,
            'type': 'video',
            'videoCategoryId': YOUTUBE_MUSIC_CATEGORY_ID,
            'maxResults': '1',
            'key': self.api_key,
        }
        async with self.session.get(self.search_url, params=params, timeout=_timeout()) as r:
            if r.status >= 300:
                logger.warning('YouTube search error %s for %r', r.status, query)
                return None
            data = await r.json(content_type=None)
        items = data.get('items') if isinstance(data, dict) else None
        if not items:
            return None
        video_id = (items[0].get('id') or {}).get('videoId')
        if video_id is None:
            return None
        return YOUTUBE_WATCH_URL.format(video_id=video_id)

    async def resolve(self, url: str) -> Optional[FallbackResolved]:
        if not self.enabled:
            return None
        page = await self._fetch_page(url)
        if page is None:
            return None
        query = search_query_from_html(page)
        if query is None:
            logger.info('No usable page title for %s', url)
            return None
        video_url = await self._search(query)
        if video_url is None:
            logger.info('YouTube search found nothing for %r', query)
            return None
        return FallbackResolved(video_url=video_url, title=query)


# ---- Slack client ----
class SlackError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class SlackClient:
    def __init__(self, session: aiohttp.ClientSession, bot_token: Optional[str], api_url: str = SLACK_API_URL):
        self.session = session
        self.base = api_url.rstrip('/')
        self.bot_token = bot_token

    async def _req(self, method: str, path: str, payload: dict) -> dict:
        if not self.bot_token:
            logger.warning('SLACK_BOT_TOKEN is not configured; cannot call %s', path)
        headers = {
            'Authorization': f'Bearer {self.bot_token or ""}',
            'Content-Type': 'application/json; charset=utf-8',
        }
        async with self.session.request(method, f'{self.base}{path}', json=payload,
                                        headers=headers, timeout=_timeout()) as r:
            if r.status >= 400:
                raise SlackError(r.status, await r.text())
            return await r.json(content_type=None)

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> dict:
        payload = {
            'channel': channel,
            'text': text,
            'thread_ts': thread_ts,
            'unfurl_links': True,
            'unfurl_media': True,
        }
        return await self._req('POST', '/chat.postMessage', payload)


# ---- dispatcher ----
class LinkBot:
    """Runs the link pipeline for one Slack message event at a time."""

    def __init__(
        self,
        *,
        resolver: LinkResolver,
        fallback: FallbackResolver,
        slack: SlackClient,
        store: ShareStore,
        messages: Optional[Dict[str, str]] = None,
        fallback_notices: Optional[List[str]] = None,
        rng: Callable[[], float] = random.random,
    ):
        self.resolver = resolver
        self.fallback = fallback
        self.slack = slack
        self.store = store
        if messages is None or fallback_notices is None:
            loaded, notices = load_messages(MESSAGES_PATH)
            messages = messages or loaded
            fallback_notices = fallback_notices or notices
        self.messages = messages
        self.fallback_notices = fallback_notices
        self.rng = rng

    async def resolve_link(self, url: str) -> ResolutionResult:
        outcome = await self.resolver.resolve(url)
        if not isinstance(outcome, Failed) or outcome.reason == 'rate_limited':
            return outcome
        if not self.fallback.enabled:
            return outcome
        found = await self.fallback.resolve(url)
        if found is not None:
            logger.info('Fallback found %s for %s', found.video_url, url)
            return found
        return Failed(outcome.reason, outcome.status, fallback_attempted=True)

    async def _record(self, url: str, outcome: ResolutionResult, user: str, channel: str, ts: str) -> None:
        if isinstance(outcome, Resolved):
            songlink_url, youtube_url, title = outcome.canonical_url, outcome.video_url, outcome.title
        elif isinstance(outcome, FallbackResolved):
            songlink_url, youtube_url, title = None, outcome.video_url, outcome.title
        else:
            return
        # Store writes block; they run on a worker thread.
        await asyncio.to_thread(self.store.record, SharedSongIn(
            original_url=url,
            songlink_url=songlink_url,
            youtube_url=youtube_url,
            title=title,
            shared_by=user,
            channel=channel,
            message_ts=ts,
        ))

    async def _reply(self, channel: str, ts: str, text: str) -> None:
        data = await self.slack.post_message(channel, text, thread_ts=ts)
        if data.get('ok'):
            return
        error = data.get('error') or 'unknown_error'
        logger.error('Slack chat.postMessage failed in %s: %s', channel, error)
        try:
            await self.slack.post_message(channel, self.messages['post_failed'].format(error=error), thread_ts=ts)
        except Exception:
            logger.warning('Could not post failure notice to %s', channel, exc_info=True)

    async def handle_link(self, url: str, *, user: str, channel: str, ts: str) -> None:
        outcome = await self.resolve_link(url)
        await self._record(url, outcome, user, channel, ts)
        text = compose_reply(outcome, self.messages, self.fallback_notices, self.rng)
        await self._reply(channel, ts, text)

    async def handle_message(self, event) -> int:
        """Resolve and answer every music link in ``event``; returns links handled."""
        urls = extract_music_urls(event.text)
        handled = 0
        for url in urls:
            try:
                await self.handle_link(url, user=event.user or '', channel=event.channel, ts=event.ts)
                handled += 1
            except Exception:
                logger.exception('Error processing music link %s in %s', url, event.channel)
        return handled
