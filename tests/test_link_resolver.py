import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import aiohttp

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import bot.link_bot as link_bot


SONGLINK_PAYLOAD = {
    "pageUrl": "https://song.link/s/1",
    "entityUniqueId": "SPOTIFY_SONG::1",
    "linksByPlatform": {
        "spotify": {"url": "https://open.spotify.com/track/1"},
        "youtube": {"url": "https://www.youtube.com/watch?v=yt1"},
        "youtubeMusic": {"url": "https://music.youtube.com/watch?v=ytm1"},
    },
    "entitiesByUniqueId": {
        "SPOTIFY_SONG::1": {"artistName": "Daft Punk", "title": "One More Time"},
    },
}


def _resolver(status: int, body: object) -> link_bot.LinkResolver:
    resolver = link_bot.LinkResolver(MagicMock(), api_url="https://api.example/links")
    resolver._fetch = AsyncMock(return_value=(status, body))
    return resolver


class LinkResolverTests(unittest.IsolatedAsyncioTestCase):
    async def test_success_returns_canonical_video_and_title(self) -> None:
        result = await _resolver(200, SONGLINK_PAYLOAD).resolve("https://open.spotify.com/track/1")

        self.assertEqual(
            result,
            link_bot.Resolved(
                canonical_url="https://song.link/s/1",
                video_url="https://www.youtube.com/watch?v=yt1",
                title="Daft Punk - One More Time",
            ),
        )

    async def test_youtube_music_link_is_used_when_youtube_missing(self) -> None:
        payload = dict(SONGLINK_PAYLOAD)
        payload["linksByPlatform"] = {"youtubeMusic": {"url": "https://music.youtube.com/watch?v=ytm1"}}

        result = await _resolver(200, payload).resolve("https://open.spotify.com/track/1")

        self.assertEqual(result.video_url, "https://music.youtube.com/watch?v=ytm1")

    async def test_no_video_or_entity_leaves_optionals_empty(self) -> None:
        payload = {"pageUrl": "https://song.link/s/2", "entityUniqueId": "X::2"}

        result = await _resolver(200, payload).resolve("https://tidal.com/track/2")

        self.assertEqual(result, link_bot.Resolved(canonical_url="https://song.link/s/2"))

    async def test_title_needs_both_artist_and_title(self) -> None:
        payload = dict(SONGLINK_PAYLOAD)
        payload["entitiesByUniqueId"] = {"SPOTIFY_SONG::1": {"title": "One More Time"}}

        result = await _resolver(200, payload).resolve("https://open.spotify.com/track/1")

        self.assertIsNone(result.title)

    async def test_rate_limit_is_classified(self) -> None:
        result = await _resolver(429, "slow down").resolve("https://open.spotify.com/track/1")

        self.assertEqual(result, link_bot.Failed("rate_limited", 429))

    async def test_other_http_errors_are_upstream_errors(self) -> None:
        result = await _resolver(500, "boom").resolve("https://open.spotify.com/track/1")

        self.assertEqual(result, link_bot.Failed("upstream_error", 500))

    async def test_body_without_page_url_is_no_match(self) -> None:
        result = await _resolver(200, {"entityUniqueId": "X::3"}).resolve("https://deezer.com/track/3")

        self.assertEqual(result.reason, "no_match")

    async def test_transport_errors_propagate(self) -> None:
        resolver = link_bot.LinkResolver(MagicMock())
        resolver._fetch = AsyncMock(side_effect=OSError("connection reset"))

        with self.assertRaises(OSError):
            await resolver.resolve("https://open.spotify.com/track/1")

    def test_lookup_url_percent_encodes_the_original(self) -> None:
        resolver = link_bot.LinkResolver(MagicMock(), api_url="https://api.example/links", user_country="DE")

        lookup = resolver._lookup_url("https://open.spotify.com/track/1?si=a&b=c")

        self.assertEqual(
            lookup,
            "https://api.example/links?url=https%3A%2F%2Fopen.spotify.com%2Ftrack%2F1%3Fsi%3Da%26b%3Dc&userCountry=DE",
        )

    def test_lookup_url_encodes_user_country(self) -> None:
        resolver = link_bot.LinkResolver(MagicMock(), api_url="https://api.example/links", user_country="D E&x=1")

        lookup = resolver._lookup_url("https://tidal.com/track/1")

        self.assertTrue(lookup.endswith("&userCountry=D%20E%26x%3D1"), lookup)


class SearchQueryTests(unittest.TestCase):
    def test_platform_suffix_is_stripped(self) -> None:
        page = "<html><head><title>Song Title - Artist | Spotify</title></head></html>"
        self.assertEqual(link_bot.search_query_from_html(page), "Song Title - Artist")

    def test_on_platform_suffix_and_entities(self) -> None:
        page = "<title>Rock &amp; Roll by Band on Apple Music</title>"
        self.assertEqual(link_bot.search_query_from_html(page), "Rock & Roll by Band")

    def test_suffix_match_ignores_case(self) -> None:
        page = "<title>Midnight City - M83 - soundcloud</title>"
        self.assertEqual(link_bot.search_query_from_html(page), "Midnight City - M83")

    def test_missing_title_returns_none(self) -> None:
        self.assertIsNone(link_bot.search_query_from_html("<html><body>nothing</body></html>"))

    def test_short_title_returns_none(self) -> None:
        self.assertIsNone(link_bot.search_query_from_html("<title>Abc | Spotify</title>"))

    def test_og_title_is_used_without_title_tag(self) -> None:
        page = '<meta property="og:title" content="Windowlicker - Aphex Twin">'
        self.assertEqual(link_bot.search_query_from_html(page), "Windowlicker - Aphex Twin")


class FallbackResolverTests(unittest.IsolatedAsyncioTestCase):
    async def test_disabled_without_api_key(self) -> None:
        fallback = link_bot.FallbackResolver(MagicMock(), api_key=None)
        fallback._fetch_page = AsyncMock()

        self.assertFalse(fallback.enabled)
        self.assertIsNone(await fallback.resolve("https://open.spotify.com/track/1"))
        fallback._fetch_page.assert_not_awaited()

    async def test_title_search_returns_video(self) -> None:
        fallback = link_bot.FallbackResolver(MagicMock(), api_key="key")
        fallback._fetch_page = AsyncMock(return_value="<title>Song Title - Artist | Spotify</title>")
        fallback._search = AsyncMock(return_value="https://www.youtube.com/watch?v=abc")

        result = await fallback.resolve("https://open.spotify.com/track/1")

        fallback._search.assert_awaited_once_with("Song Title - Artist")
        self.assertEqual(
            result,
            link_bot.FallbackResolved(video_url="https://www.youtube.com/watch?v=abc", title="Song Title - Artist"),
        )

    async def test_no_usable_title_skips_search(self) -> None:
        fallback = link_bot.FallbackResolver(MagicMock(), api_key="key")
        fallback._fetch_page = AsyncMock(return_value="<title>Spotify</title>")
        fallback._search = AsyncMock()

        self.assertIsNone(await fallback.resolve("https://open.spotify.com/track/1"))
        fallback._search.assert_not_awaited()

    async def test_empty_search_returns_none(self) -> None:
        fallback = link_bot.FallbackResolver(MagicMock(), api_key="key")
        fallback._fetch_page = AsyncMock(return_value="<title>Song Title - Artist</title>")
        fallback._search = AsyncMock(return_value=None)

        self.assertIsNone(await fallback.resolve("https://open.spotify.com/track/1"))


class _FakeResponse:
    def __init__(self, status: int, data: object) -> None:
        self.status = status
        self._data = data
        self.json_content_type = "unset"

    async def json(self, content_type="application/json"):
        self.json_content_type = content_type
        return self._data

    async def text(self, errors="strict"):
        return str(self._data)


class _FakeRequest:
    def __init__(self, response: _FakeResponse) -> None:
        self._response = response

    async def __aenter__(self) -> _FakeResponse:
        return self._response

    async def __aexit__(self, *exc) -> bool:
        return False


def _session(status: int, data: object) -> tuple:
    response = _FakeResponse(status, data)
    session = MagicMock()
    session.get = MagicMock(return_value=_FakeRequest(response))
    return session, response


class HttpPathTests(unittest.IsolatedAsyncioTestCase):
    async def test_songlink_lookup_goes_through_session(self) -> None:
        session, response = _session(200, SONGLINK_PAYLOAD)
        resolver = link_bot.LinkResolver(session, api_url="https://api.example/links", user_country="US")

        result = await resolver.resolve("https://open.spotify.com/track/1")

        self.assertEqual(result.canonical_url, "https://song.link/s/1")
        self.assertEqual(result.title, "Daft Punk - One More Time")
        url = session.get.call_args.args[0]
        self.assertEqual(
            url,
            "https://api.example/links?url=https%3A%2F%2Fopen.spotify.com%2Ftrack%2F1&userCountry=US",
        )
        self.assertIsInstance(session.get.call_args.kwargs["timeout"], aiohttp.ClientTimeout)
        self.assertIsNone(response.json_content_type)

    async def test_songlink_rate_limit_reads_text_body(self) -> None:
        session, response = _session(429, "Too Many Requests")
        resolver = link_bot.LinkResolver(session, api_url="https://api.example/links")

        result = await resolver.resolve("https://open.spotify.com/track/1")

        self.assertEqual(result, link_bot.Failed("rate_limited", 429))
        self.assertEqual(response.json_content_type, "unset")

    async def test_youtube_search_parameters(self) -> None:
        session, _ = _session(200, {"items": [{"id": {"kind": "youtube#video", "videoId": "abc123"}}]})
        fallback = link_bot.FallbackResolver(session, api_key="key", search_url="https://yt.example/search")

        video_url = await fallback._search("Song Title - Artist")

        self.assertEqual(video_url, "https://www.youtube.com/watch?v=abc123")
        self.assertEqual(session.get.call_args.args[0], "https://yt.example/search")
        self.assertEqual(
            session.get.call_args.kwargs["params"],
            {
                "part": "snippet",
                "q": "Song Title - Artist",
                "type": "video",
                "videoCategoryId": "10",
                "maxResults": "1",
                "key": "key",
            },
        )

    async def test_youtube_search_error_returns_none(self) -> None:
        session, _ = _session(403, "quotaExceeded")
        fallback = link_bot.FallbackResolver(session, api_key="key")

        with self.assertLogs(link_bot.logger, level="WARNING"):
            self.assertIsNone(await fallback._search("Song Title - Artist"))

    async def test_page_fetch_sends_crawler_user_agent(self) -> None:
        session, _ = _session(200, "<title>Song Title - Artist | Spotify</title>")
        fallback = link_bot.FallbackResolver(session, api_key="key")

        page = await fallback._fetch_page("https://open.spotify.com/track/1")

        self.assertIn("Song Title", page)
        self.assertEqual(session.get.call_args.kwargs["headers"], {"User-Agent": link_bot.CRAWLER_USER_AGENT})


if __name__ == "__main__":
    unittest.main()
