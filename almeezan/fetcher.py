from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

import requests
import urllib3

from almeezan.errors import (
    ChallengeDetectedError,
    FetchError,
    TlsVerificationError,
    TransientFetchError,
)

log = logging.getLogger(__name__)

PORTAL_ORIGIN = "https://www.almeezan.qa"
USER_AGENT = "Qatari-Law-Ingest/1.0"

TEXT_ACCEPT = "text/html, text/plain, */*"
BINARY_ACCEPT = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document, "
    "application/octet-stream, */*"
)

_CHALLENGE_COOKIE_RE = re.compile(r"cookiesession\d+", re.IGNORECASE)
_CHALLENGE_PACKER_RE = re.compile(r"eval\(function\(p,a,c,k,e,d\)", re.IGNORECASE)
_DEFAULT_CHALLENGE_ENDPOINT = "LawViewWord.aspx"
_UTF8_BOM = b"\xef\xbb\xbf"

_TRANSIENT_EXCEPTIONS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


@dataclass(frozen=True)
class FetchConfig:
    user_agent: str = USER_AGENT
    min_interval_seconds: float = 1.0
    timeout_seconds: float = 8.0
    max_retries: int = 2
    backoff_base_seconds: float = 1.0


def resolve_min_interval(default: float) -> float:
    raw = os.getenv("ALMEEZAN_MIN_DELAY_SECONDS")
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        return max(0.0, float(raw.strip()))
    except ValueError:
        log.warning("Ignoring invalid ALMEEZAN_MIN_DELAY_SECONDS=%r", raw)
        return float(default)


def to_absolute_url(path_or_url: str) -> str:
    if re.match(r"^https?://", path_or_url or "", flags=re.IGNORECASE):
        return path_or_url
    trimmed = path_or_url if (path_or_url or "").startswith("/") else f"/{path_or_url}"
    return f"{PORTAL_ORIGIN}{trimmed}"


def endpoint_name(url: str) -> str:
    path = urlparse(url or "").path or ""
    return path.rstrip("/").rsplit("/", 1)[-1]


def is_challenge_html(html: str, endpoint: str = _DEFAULT_CHALLENGE_ENDPOINT) -> bool:
    """True for the portal's obfuscated-JS interstitial served instead of content."""
    if not html:
        return False
    if not _CHALLENGE_COOKIE_RE.search(html):
        return False
    if not _CHALLENGE_PACKER_RE.search(html):
        return False
    return re.search(re.escape(endpoint or ""), html, flags=re.IGNORECASE) is not None


def is_challenge_bytes(data: bytes, endpoint: str = _DEFAULT_CHALLENGE_ENDPOINT) -> bool:
    body = (data or b"").lstrip()
    if body.startswith(_UTF8_BOM):
        body = body[len(_UTF8_BOM):].lstrip()
    if body[:1] != b"<":
        return False
    return is_challenge_html(body.decode("utf-8", errors="replace"), endpoint)


# -----------------
# Pacing
# -----------------


class PacingGate:
    """Admits outbound dispatches no closer together than `min_interval` seconds.

    A caller reserves the next free slot under the lock and sleeps outside it,
    so admission is FIFO in lock order and transfers never hold the lock.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_dispatch: Optional[float] = None

    def wait(self) -> float:
        with self._lock:
            now = self._clock()
            if self._last_dispatch is None:
                slot = now
            else:
                slot = max(now, self._last_dispatch + self.min_interval)
            self._last_dispatch = slot

        delay = slot - self._clock()
        if delay > 0:
            self._sleep(delay)
        return slot


_shared_gate: Optional[PacingGate] = None
_shared_gate_lock = threading.Lock()


def shared_gate(min_interval: float) -> PacingGate:
    global _shared_gate
    with _shared_gate_lock:
        if _shared_gate is None:
            _shared_gate = PacingGate(min_interval)
        else:
            _shared_gate.min_interval = float(min_interval)
        return _shared_gate


# -----------------
# HTTP
# -----------------


def build_session(user_agent: str, *, verify: bool) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    session.verify = verify
    return session


def build_insecure_session(user_agent: str) -> requests.Session:
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return build_session(user_agent, verify=False)


def decode_response_text(resp: requests.Response) -> str:
    ctype = (resp.headers.get("Content-Type") or "").lower()
    raw = resp.content or b""
    if "charset=" in ctype and resp.encoding:
        try:
            return raw.decode(resp.encoding, errors="replace")
        except LookupError:
            pass
    return raw.decode("utf-8", errors="replace")


class HttpClient:
    """Paced GETs over a verified primary session with an insecure alternate.

    The alternate transport is used only after a TLS trust failure, a challenge
    page that survives the retry budget, or exhausted transient retries.
    """

    def __init__(
        self,
        config: FetchConfig,
        *,
        gate: Optional[PacingGate] = None,
        primary: Optional[requests.Session] = None,
        alternate: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.gate = gate or shared_gate(config.min_interval_seconds)
        self.primary = primary or build_session(config.user_agent, verify=True)
        self._alternate = alternate
        self._sleep = sleep

    @property
    def alternate(self) -> requests.Session:
        if self._alternate is None:
            self._alternate = build_insecure_session(self.config.user_agent)
        return self._alternate

    def backoff_seconds(self, attempt: int) -> float:
        return self.config.backoff_base_seconds * (2 ** (attempt + 1))

    def fetch_text(self, url: str) -> str:
        resp = self._get(url, accept=TEXT_ACCEPT)
        return decode_response_text(resp)

    def fetch_binary(self, url: str) -> bytes:
        resp = self._get(url, accept=BINARY_ACCEPT)
        return resp.content or b""

    def _transports(self) -> List[Tuple[str, Callable[[], requests.Session]]]:
        return [
            ("primary", lambda: self.primary),
            ("alternate", lambda: self.alternate),
        ]

    def _get(self, url: str, *, accept: str) -> requests.Response:
        endpoint = endpoint_name(url) or _DEFAULT_CHALLENGE_ENDPOINT
        reasons: List[str] = []
        last_exc: Optional[FetchError] = None

        for name, session_factory in self._transports():
            try:
                return self._get_with_retry(session_factory(), url, accept=accept, endpoint=endpoint)
            except (TlsVerificationError, ChallengeDetectedError, TransientFetchError) as exc:
                reasons.append(f"{name}: {exc}")
                last_exc = exc
                log.debug("%s transport failed for %s: %s", name, url, exc)
            except FetchError as exc:
                if name == "primary":
                    exc.reasons = [f"{name}: {exc}"]
                    raise
                reasons.append(f"{name}: {exc}")
                last_exc = exc

        message = f"Failed to fetch {url}: " + " | ".join(reasons)
        if isinstance(last_exc, ChallengeDetectedError):
            raise ChallengeDetectedError(message, url=url, reasons=reasons) from last_exc
        raise FetchError(message, url=url, reasons=reasons) from last_exc

    def _get_with_retry(
        self,
        session: requests.Session,
        url: str,
        *,
        accept: str,
        endpoint: str,
    ) -> requests.Response:
        last_reason = ""
        challenged = False
        for attempt in range(self.config.max_retries + 1):
            self.gate.wait()
            challenged = False
            try:
                resp = session.get(
                    url,
                    headers={"Accept": accept},
                    timeout=self.config.timeout_seconds,
                    allow_redirects=True,
                )
            except requests.exceptions.SSLError as exc:
                raise TlsVerificationError(f"TLS verification failed: {exc}", url=url) from exc
            except _TRANSIENT_EXCEPTIONS as exc:
                last_reason = f"{type(exc).__name__}: {exc}"
            else:
                status = resp.status_code
                if status == 429 or status >= 500:
                    last_reason = f"HTTP {status}"
                elif status >= 400:
                    raise FetchError(f"HTTP {status} while fetching {url}", url=url)
                elif is_challenge_bytes(resp.content or b"", endpoint):
                    challenged = True
                    last_reason = "anti-automation challenge page"
                else:
                    return resp

            if attempt < self.config.max_retries:
                backoff = self.backoff_seconds(attempt)
                log.debug("retrying %s in %.1fs (%s)", url, backoff, last_reason)
                self._sleep(backoff)

        attempts = self.config.max_retries + 1
        if challenged:
            raise ChallengeDetectedError(f"{last_reason} after {attempts} attempts", url=url)
        raise TransientFetchError(f"{last_reason} after {attempts} attempts", url=url)
