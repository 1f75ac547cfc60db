import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests
from yt_dlp.utils import DownloadError

from audio_relay_api.config import Settings
from audio_relay_api.errors import MediaNotFound, RelayInterrupted, UpstreamFailure
from audio_relay_api.provider import (
    HttpPushSource,
    YtDlpProvider,
    descriptor_from_format,
    mime_type_for,
)
from audio_relay_api.relay import RelaySession, SessionState

from fakes import FakeResponse, audio


ENCODING = audio("251", 160)

INFO = {
    "id": "abc123",
    "title": "Some Song",
    "duration": 215,
    "formats": [
        {"format_id": "251", "ext": "webm", "acodec": "opus", "vcodec": "none", "abr": 135.2,
         "filesize": 3_500_000, "url": "https://rr1.example/251", "protocol": "https",
         "http_headers": {"User-Agent": "yt-ua"}},
        {"format_id": "140", "ext": "m4a", "acodec": "mp4a.40.2", "vcodec": "none", "abr": 129.5,
         "url": "https://rr1.example/140", "protocol": "https"},
        {"format_id": "18", "ext": "mp4", "acodec": "mp4a.40.2", "vcodec": "avc1.42001E", "tbr": 500,
         "url": "https://rr1.example/18", "protocol": "https"},
        {"format_id": "sb0", "ext": "mhtml", "acodec": "none", "vcodec": "none",
         "url": "https://rr1.example/sb0", "protocol": "mhtml"},
        {"format_id": "hls-96", "ext": "mp4", "acodec": "mp4a.40.2", "vcodec": "none", "tbr": 96,
         "url": "https://rr1.example/hls.m3u8", "protocol": "m3u8_native"},
    ],
}


class TestFormatMapping:

    def test_audio_only_descriptor(self):
        desc = descriptor_from_format(INFO["formats"][0])
        assert desc.format_key == "251"
        assert desc.audio_only is True
        assert desc.bitrate == 135.2
        assert desc.content_length == 3_500_000
        assert desc.mime_type == 'audio/webm; codecs="opus"'
        assert desc.media_type == "audio/webm"
        assert desc.http_headers == {"User-Agent": "yt-ua"}

    def test_muxed_format_is_not_audio_only(self):
        desc = descriptor_from_format(INFO["formats"][2])
        assert desc.audio_only is False
        assert desc.bitrate == 500.0
        assert desc.mime_type == "video/mp4"

    def test_m4a_maps_to_audio_mp4(self):
        assert mime_type_for(INFO["formats"][1]).startswith("audio/mp4")


class TestYtDlpProvider:

    def test_resolve_metadata_keeps_relayable_formats(self):
        provider = YtDlpProvider(Settings())
        with patch.object(YtDlpProvider, "_extract", return_value=INFO) as extract:
            meta = provider.resolve_metadata("abc123")
        extract.assert_called_once_with("https://www.youtube.com/watch?v=abc123")
        assert [c.format_key for c in meta.candidates] == ["251", "140", "18"]
        assert meta.title == "Some Song"
        assert meta.duration_sec == 215

    def test_full_url_identifier_is_used_as_is(self):
        provider = YtDlpProvider(Settings())
        assert provider.media_url("https://youtu.be/abc") == "https://youtu.be/abc"

    def test_unavailable_video_is_not_found(self):
        provider = YtDlpProvider(Settings())
        err = DownloadError("ERROR: [youtube] zzz: Video unavailable")
        with patch.object(YtDlpProvider, "_extract", side_effect=err):
            with pytest.raises(MediaNotFound):
                provider.resolve_metadata("zzz")

    def test_ambiguous_failure_is_upstream(self):
        provider = YtDlpProvider(Settings())
        err = DownloadError("ERROR: [youtube] abc: Sign in to confirm you're not a bot")
        with patch.object(YtDlpProvider, "_extract", side_effect=err):
            with pytest.raises(UpstreamFailure):
                provider.resolve_metadata("abc")

    def test_playlist_is_unexpected_shape(self):
        provider = YtDlpProvider(Settings())
        with patch.object(YtDlpProvider, "_extract", return_value={"_type": "playlist", "entries": []}):
            with pytest.raises(UpstreamFailure):
                provider.resolve_metadata("PL123")

    def test_ydl_options_keep_cookies_out_of_headers(self):
        settings = Settings(cookies=[{"name": "SID", "value": "s3cret"}])
        opts = YtDlpProvider(settings)._ydl_options()
        assert "Cookie" not in opts["http_headers"]
        assert opts["skip_download"] is True

    def test_open_stream_sends_headers_and_returns_push_source(self):
        http = MagicMock()
        http.get.return_value = FakeResponse([b"a"])
        settings = Settings(cookies=[{"name": "SID", "value": "s3cret"}], connect_timeout=3, read_timeout=30)
        encoding = descriptor_from_format(INFO["formats"][0])
        source = YtDlpProvider(settings, http=http).open_stream(encoding)
        assert isinstance(source, HttpPushSource)
        args, kwargs = http.get.call_args
        assert args == ("https://rr1.example/251",)
        assert kwargs["stream"] is True
        assert kwargs["timeout"] == (3, 30)
        assert kwargs["headers"]["Cookie"] == "SID=s3cret"
        assert kwargs["headers"]["User-Agent"] == "yt-ua"

    def test_open_stream_http_error_is_upstream_failure(self):
        http = MagicMock()
        response = FakeResponse(status_code=403)
        http.get.return_value = response
        with pytest.raises(UpstreamFailure) as excinfo:
            YtDlpProvider(Settings(), http=http).open_stream(ENCODING)
        assert "403" in excinfo.value.detail
        assert response.close_calls == 1

    def test_open_stream_network_error_is_upstream_failure(self):
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("connection refused")
        with pytest.raises(UpstreamFailure):
            YtDlpProvider(Settings(), http=http).open_stream(ENCODING)

    def test_open_stream_without_url_fails(self):
        encoding = ENCODING.model_copy(update={"url": None})
        with pytest.raises(UpstreamFailure):
            YtDlpProvider(Settings(), http=MagicMock()).open_stream(encoding)


class TestHttpPushSource:

    def test_relays_response_body_in_order(self):
        async def run():
            response = FakeResponse([b"one", b"two", b"three"])
            source = HttpPushSource(response, chunk_size=3)
            session = RelaySession(ENCODING, source)
            source.start(session)
            chunks = [c async for c in session]
            return chunks, session, source

        chunks, session, source = asyncio.run(run())
        assert chunks == [b"one", b"two", b"three"]
        assert session.state is SessionState.COMPLETED
        assert source.closed

    def test_read_error_surfaces_after_buffered_chunks(self):
        async def run():
            response = FakeResponse([b"a", b"b"], error=requests.ConnectionError("reset"))
            source = HttpPushSource(response)
            session = RelaySession(ENCODING, source)
            source.start(session)
            got = [await session.next(), await session.next()]
            with pytest.raises(RelayInterrupted):
                await session.next()
            return got

        assert asyncio.run(run()) == [b"a", b"b"]

    def test_pump_respects_backpressure(self):
        async def run():
            response = FakeResponse([b"x"] * 40)
            source = HttpPushSource(response, chunk_size=1)
            session = RelaySession(ENCODING, source, high_water_mark=4)
            source.start(session)
            total = 0
            async for chunk in session:
                total += len(chunk)
                await asyncio.sleep(0.001)
            return total, session.peak_buffered

        total, peak = asyncio.run(run())
        assert total == 40
        assert peak <= 4 + 1

    def test_cancel_closes_a_stalled_response(self):
        async def run():
            response = FakeResponse([b"first"], stall=True)
            source = HttpPushSource(response)
            session = RelaySession(ENCODING, source)
            source.start(session)
            first = await session.next()
            session.cancel()
            thread = source._thread
            await asyncio.to_thread(thread.join, 2)
            return first, source, response, thread

        first, source, response, thread = asyncio.run(run())
        assert first == b"first"
        assert source.closed
        assert response.close_calls >= 1
        assert not thread.is_alive()

    def test_start_twice_is_rejected(self):
        async def run():
            source = HttpPushSource(FakeResponse([]))
            session = RelaySession(ENCODING, source)
            source.start(session)
            with pytest.raises(RuntimeError):
                source.start(session)
            await session.next()

        asyncio.run(run())
