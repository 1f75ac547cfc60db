# config.py
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def parse_cookies(raw: Optional[str]) -> List[Dict[str, Any]]:
    """Parse the cookie export (a JSON list of {name, value, ...} objects)."""
    if not raw or not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning("YOUTUBE_COOKIES is not valid JSON, ignoring it: %s", e)
        return []
    if not isinstance(data, list):
        logger.warning("YOUTUBE_COOKIES must be a JSON list, got %s; ignoring it", type(data).__name__)
        return []
    return [c for c in data if isinstance(c, dict) and c.get("name")]


def _int_env(name: str, default: int) -> int:
    val = os.getenv(name)
    return int(val) if val not in (None, "") else default


def _optional_int_env(name: str) -> Optional[int]:
    val = os.getenv(name)
    return int(val) if val not in (None, "") else None


def _float_env(name: str, default: float) -> float:
    val = os.getenv(name)
    return float(val) if val not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    high_water_mark: int = 8 * 1024 * 1024
    low_water_mark: Optional[int] = None
    chunk_size: int = 128 * 1024
    resolve_timeout: float = 20.0
    open_timeout: float = 15.0
    connect_timeout: float = 5.0
    read_timeout: float = 300.0
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            cookies=parse_cookies(os.getenv("YOUTUBE_COOKIES")),
            user_agent=os.getenv("RELAY_USER_AGENT", DEFAULT_USER_AGENT),
            accept_language=os.getenv("RELAY_ACCEPT_LANGUAGE", "en-US,en;q=0.9"),
            high_water_mark=_int_env("RELAY_HIGH_WATER_MARK", 8 * 1024 * 1024),
            low_water_mark=_optional_int_env("RELAY_LOW_WATER_MARK"),
            chunk_size=_int_env("RELAY_CHUNK_SIZE", 128 * 1024),
            resolve_timeout=_float_env("RELAY_RESOLVE_TIMEOUT", 20.0),
            open_timeout=_float_env("RELAY_OPEN_TIMEOUT", 15.0),
            connect_timeout=_float_env("RELAY_CONNECT_TIMEOUT", 5.0),
            read_timeout=_float_env("RELAY_READ_TIMEOUT", 300.0),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
            log_dir=os.getenv("RELAY_LOG_DIR") or None,
        )

    @property
    def cookie_header(self) -> str:
        return "; ".join(f"{c['name']}={c.get('value', '')}" for c in self.cookies)

    def request_headers(self) -> Dict[str, str]:
        """Browser-like headers sent with every origin request."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": self.accept_language,
        }
        if self.cookies:
            headers["Cookie"] = self.cookie_header
        return headers
