"""
Source Provider: resolves a media identifier to its available encodings and
opens a push-style byte source for one of them.

The relay core only depends on the three protocols below. ``YtDlpProvider`` is
the production implementation: yt-dlp for metadata, ``requests`` for the media
fetch, and ``HttpPushSource`` to push the response body onto the event loop.
"""
import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional, Protocol

import requests
from requests.cookies import create_cookie
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from .config import Settings
from .errors import MediaNotFound, UpstreamFailure
from .models import EncodingDescriptor, MediaMetadata

logger = logging.getLogger(__name__)


class PushListener(Protocol):
    def on_data(self, chunk: bytes) -> None: ...
    def on_end(self) -> None: ...
    def on_error(self, exc: BaseException) -> None: ...


class PushSource(Protocol):
    """Delivers data/end/error notifications; nothing follows end or error."""
    def start(self, listener: PushListener) -> None: ...
    def pause(self) -> None: ...
    def resume(self) -> None: ...
    def close(self) -> None: ...


class SourceProvider(Protocol):
    def resolve_metadata(self, identifier: str) -> MediaMetadata: ...
    def open_stream(self, encoding: EncodingDescriptor) -> PushSource: ...


# ---------------- HTTP push source ----------------

class HttpPushSource:
    """
    Pumps a streamed ``requests`` response from a daemon thread.

    Each chunk is handed to the listener on the event loop that called start(),
    and the pump waits for that hand-off to run before reading more, so a pause()
    issued from on_data takes effect before the next chunk is read.
    """
    def __init__(self, response: requests.Response, chunk_size: int = 128 * 1024, label: str = "upstream"):
        self._response = response
        self._chunk_size = max(1, int(chunk_size))
        self._label = label
        self._resume = threading.Event()
        self._resume.set()
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listener: Optional[PushListener] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    def start(self, listener: PushListener) -> None:
        if self._thread is not None:
            raise RuntimeError("source already started")
        self._loop = asyncio.get_running_loop()
        self._listener = listener
        self._thread = threading.Thread(target=self._pump, name=f"relay-{self._label}", daemon=True)
        self._thread.start()

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._resume.set()  # unblock a paused pump so it can exit
        try:
            self._response.close()
        except Exception:
            logger.debug("%s: error closing upstream response", self._label, exc_info=True)

    def _deliver(self, callback: Callable[..., None], *args: Any) -> bool:
        done = threading.Event()

        def run():
            try:
                if not self._closed.is_set():
                    callback(*args)
            finally:
                done.set()

        try:
            self._loop.call_soon_threadsafe(run)
        except RuntimeError:
            # event loop already closed; nobody is listening any more
            self.close()
            return False
        while not done.wait(0.5):
            if self._closed.is_set() or self._loop.is_closed():
                return False
        return not self._closed.is_set()

    def _pump(self):
        listener = self._listener
        try:
            for chunk in self._response.iter_content(chunk_size=self._chunk_size):
                if not chunk:
                    continue
                if not self._deliver(listener.on_data, chunk):
                    return
                self._resume.wait()
                if self._closed.is_set():
                    return
            self._deliver(listener.on_end)
        except Exception as e:
            if self._closed.is_set():
                logger.debug("%s: pump stopped after close: %s", self._label, e)
                return
            logger.warning("%s: upstream read failed: %s", self._label, e)
            self._deliver(listener.on_error, e)
        finally:
            try:
                self._response.close()
            except Exception:
                pass


# ---------------- yt-dlp provider ----------------

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={}"

# yt-dlp messages that clearly mean "there is nothing at this identifier".
# Anything else (throttling, sign-in walls, geo blocks) stays an UpstreamFailure.
NOT_FOUND_MARKERS = (
    "video unavailable",
    "this video is unavailable",
    "this video has been removed",
    "does not exist",
    "incomplete youtube id",
    "is not a valid url",
    "http error 404",
)

AUDIO_MIME_BY_EXT = {
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "webm": "audio/webm",
    "weba": "audio/webm",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
}

RELAYABLE_PROTOCOLS = ("http", "https")


def _is_audio_only(fmt: Dict[str, Any]) -> bool:
    acodec = fmt.get("acodec")
    return fmt.get("vcodec") == "none" and acodec not in (None, "none")


def mime_type_for(fmt: Dict[str, Any]) -> str:
    ext = (fmt.get("ext") or "").lower()
    if _is_audio_only(fmt):
        base = AUDIO_MIME_BY_EXT.get(ext, f"audio/{ext or 'mp4'}")
        acodec = fmt.get("acodec")
        return f'{base}; codecs="{acodec}"' if acodec else base
    return f"video/{ext or 'mp4'}"


def descriptor_from_format(fmt: Dict[str, Any]) -> EncodingDescriptor:
    bitrate = fmt.get("abr") or fmt.get("tbr")
    size = fmt.get("filesize")
    return EncodingDescriptor(
        format_key=str(fmt.get("format_id")),
        mime_type=mime_type_for(fmt),
        bitrate=float(bitrate) if bitrate else None,
        content_length=int(size) if size else None,
        audio_only=_is_audio_only(fmt),
        url=fmt.get("url"),
        http_headers={str(k): str(v) for k, v in (fmt.get("http_headers") or {}).items()},
    )


class YtDlpProvider:
    def __init__(self, settings: Settings, http: Optional[requests.Session] = None,
                 url_template: str = YOUTUBE_WATCH_URL):
        self.settings = settings
        self.url_template = url_template
        self._http = http or requests.Session()

    def media_url(self, identifier: str) -> str:
        if identifier.startswith(("http://", "https://")):
            return identifier
        return self.url_template.format(identifier)

    def _ydl_options(self) -> Dict[str, Any]:
        headers = self.settings.request_headers()
        headers.pop("Cookie", None)  # cookies go through the cookie jar
        return {
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "skip_download": True,
            "noplaylist": True,
            "http_headers": headers,
            "logger": logging.getLogger("yt_dlp"),
        }

    def _load_cookies(self, jar):
        for c in self.settings.cookies:
            jar.set_cookie(create_cookie(
                c["name"],
                str(c.get("value", "")),
                domain=c.get("domain") or ".youtube.com",
                path=c.get("path") or "/",
                secure=bool(c.get("secure", True)),
            ))

    def _extract(self, url: str) -> Dict[str, Any]:
        with YoutubeDL(self._ydl_options()) as ydl:
            self._load_cookies(ydl.cookiejar)
            return ydl.extract_info(url, download=False)

    @staticmethod
    def _map_ytdlp_error(identifier: str, exc: Exception):
        message = str(exc)
        lowered = message.lower()
        if any(marker in lowered for marker in NOT_FOUND_MARKERS):
            return MediaNotFound(f"Media not found: {identifier}", message)
        return UpstreamFailure("Metadata resolution failed", message)

    def resolve_metadata(self, identifier: str) -> MediaMetadata:
        url = self.media_url(identifier)
        logger.info("Resolving metadata for %s", identifier)
        try:
            info = self._extract(url)
        except (DownloadError, ExtractorError) as e:
            raise self._map_ytdlp_error(identifier, e) from e

        if not isinstance(info, dict) or info.get("_type") == "playlist":
            raise UpstreamFailure("Unexpected metadata shape", f"{identifier} did not resolve to a single media item")

        formats = info.get("formats") or []
        candidates = [
            descriptor_from_format(f)
            for f in formats
            if (f.get("protocol") or "https") in RELAYABLE_PROTOCOLS
        ]
        logger.info(
            "Resolved %s: %s formats (%s relayable), duration %ss",
            identifier, len(formats), len(candidates), info.get("duration"),
        )
        hint = info.get("filesize") or info.get("filesize_approx")
        return MediaMetadata(
            identifier=identifier,
            title=info.get("title"),
            duration_sec=info.get("duration"),
            candidates=candidates,
            total_length_hint=int(hint) if hint else None,
        )

    def open_stream(self, encoding: EncodingDescriptor) -> HttpPushSource:
        if not encoding.url:
            raise UpstreamFailure("Selected format has no media URL", encoding.format_key)

        headers = self.settings.request_headers()
        headers.update(encoding.http_headers)
        headers["Accept"] = "*/*"
        try:
            upstream = self._http.get(
                encoding.url,
                stream=True,
                headers=headers,
                timeout=(self.settings.connect_timeout, self.settings.read_timeout),
                allow_redirects=True,
            )
        except requests.RequestException as e:
            raise UpstreamFailure("Upstream fetch failed", str(e)) from e

        if upstream.status_code >= 400:
            status = upstream.status_code
            upstream.close()
            raise UpstreamFailure("Upstream error", f"Origin responded with HTTP {status}")

        return HttpPushSource(upstream, chunk_size=self.settings.chunk_size, label=encoding.format_key)
