"""
Streaming HTML fetcher with bounded waits.

The remote server is untrusted: it may never answer, answer and then stall,
or send an unbounded body. Every wait is therefore bounded:

- Time to first byte: one deadline of ttfb_timeout_ms covers connecting,
  every redirect hop and the wait for the final headers. When it passes the
  attempt's sockets are shut down. A miss is a timeout and is retried once
  after a 200-500 ms backoff.
- Idle timeout: once headers are in, the socket read timeout is switched to
  idle_timeout_ms and the body is read segment by segment as it arrives. A
  stall after data keeps what was received; a stall before any byte is a
  timeout.
- Byte cap: reading stops as soon as max_html_bytes is exceeded and the body
  is cut to exactly the cap.

Timeouts and byte cap truncation are soft limits: they still produce a
FetchOk. Only a timeout with no data, or a network error, produces FetchFailed.
"""

import logging
import random
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.exceptions import ConnectTimeoutError, HTTPError, ReadTimeoutError

from .encoding_utils import EncodingDecision, decode_buffer, resolve_encoding
from .settings import Settings

logger = logging.getLogger(__name__)

# Browser-like headers; some sites refuse obvious bots
USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123 Safari/537.36'
ACCEPT = 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8'
ACCEPT_LANGUAGE = 'ja,en-US;q=0.9,en;q=0.8'

REQUEST_HEADERS = {
    'User-Agent': USER_AGENT,
    'Accept': ACCEPT,
    'Accept-Language': ACCEPT_LANGUAGE,
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
}

CHUNK_SIZE = 8192
BACKOFF_MIN_MS = 200
BACKOFF_MAX_MS = 500

ERROR_TIMEOUT = 'timeout'
ERROR_FAILED = 'failed'

# Body reads go to urllib3 directly, so its errors arrive unwrapped
BODY_READ_ERRORS = (requests.exceptions.RequestException, HTTPError, OSError)


class FetchError(Exception):
    """Network-level failure; terminal on first occurrence."""


class FetchTimeoutError(FetchError):
    """No response headers in time, or no body byte before the idle timeout."""


@dataclass
class ResponseMeta:
    """What we learned about the HTTP response, besides its body."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    bytes_read: int = 0
    truncated: bool = False
    encoding: Optional[EncodingDecision] = None


@dataclass
class FetchOk:
    final_url: str
    html: str
    response_meta: ResponseMeta


@dataclass
class FetchNonHtml:
    final_url: str
    content_type: str
    response_meta: ResponseMeta


@dataclass
class FetchFailed:
    error_kind: str  # ERROR_TIMEOUT | ERROR_FAILED
    message: str


FetchOutcome = Union[FetchOk, FetchNonHtml, FetchFailed]


def is_timeout_error(exc: BaseException) -> bool:
    """
    Classify an exception raised by requests/urllib3 as a timeout.

    requests re-wraps read timeouts during body streaming as ConnectionError,
    so the wrapped exception and the message are inspected as well.
    """
    timeout_types = (requests.exceptions.Timeout, TimeoutError, ReadTimeoutError, ConnectTimeoutError)
    if isinstance(exc, timeout_types):
        return True
    if any(isinstance(arg, timeout_types) for arg in exc.args):
        return True
    message = str(exc).lower()
    return 'timed out' in message or 'timeout' in message


def is_html_content_type(content_type: str) -> bool:
    return 'text/html' in (content_type or '').lower()


def backoff_delay() -> float:
    """Randomised retry delay in seconds, between 200 and 500 ms."""
    return random.randint(BACKOFF_MIN_MS, BACKOFF_MAX_MS) / 1000


def _set_read_timeout(response: requests.Response, seconds: float) -> None:
    """Switch the socket read timeout of a streamed response."""
    connection = getattr(response.raw, 'connection', None)
    sock = getattr(connection, 'sock', None)
    if sock is not None:
        sock.settimeout(seconds)


def _shutdown_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer or returned to the pool
        pass


class AttemptDeadline:
    """
    Time-to-first-byte deadline for one fetch attempt.

    Covers connecting, every redirect hop and the wait for the final
    headers. Sockets opened during the attempt are registered here; when
    the timer fires they are shut down, which fails whatever read is
    blocked on them. After finish() the value of `expired` is final.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expired = False
        self._finished = False
        self._sockets = []
        self._lock = threading.Lock()
        self._timer = threading.Timer(seconds, self._expire)
        self._timer.daemon = True

    def __enter__(self) -> 'AttemptDeadline':
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.finish()

    def finish(self) -> None:
        with self._lock:
            self._finished = True
            self._sockets.clear()
        self._timer.cancel()

    def register(self, sock: socket.socket) -> None:
        with self._lock:
            if not self.expired:
                self._sockets.append(sock)
                return
        # Connected after the deadline passed
        _shutdown_socket(sock)

    def _expire(self) -> None:
        with self._lock:
            if self._finished:
                return
            self.expired = True
            sockets, self._sockets = self._sockets, []
        logger.debug(f"TTFB deadline of {self.seconds:.3f} s passed, aborting {len(sockets)} socket(s)")
        for sock in sockets:
            _shutdown_socket(sock)


class _DeadlineConnectionMixin:
    """urllib3 connection that registers its socket with an AttemptDeadline."""

    def __init__(self, *args, deadline: Optional[AttemptDeadline] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.deadline = deadline

    def connect(self):
        super().connect()
        if self.deadline is not None:
            self.deadline.register(self.sock)


class _DeadlineHTTPConnection(_DeadlineConnectionMixin, HTTPConnection):
    pass


class _DeadlineHTTPSConnection(_DeadlineConnectionMixin, HTTPSConnection):
    pass


_DEADLINE_CONNECTIONS = {
    HTTPConnection: _DeadlineHTTPConnection,
    HTTPSConnection: _DeadlineHTTPSConnection,
}


class DeadlineAdapter(HTTPAdapter):
    """Transport adapter whose connections are bound to one AttemptDeadline."""

    def __init__(self, deadline: AttemptDeadline):
        self.deadline = deadline
        super().__init__()

    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        pool = super().get_connection_with_tls_context(request, verify, proxies=proxies, cert=cert)
        # Pools are reused across redirects to the same host; swap only once
        connection_cls = _DEADLINE_CONNECTIONS.get(pool.ConnectionCls)
        if connection_cls is not None:
            pool.ConnectionCls = connection_cls
            pool.conn_kw['deadline'] = self.deadline
        return pool


def _deadline_session(deadline: AttemptDeadline) -> requests.Session:
    session = requests.Session()
    adapter = DeadlineAdapter(deadline)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return session


def _iter_received(response: requests.Response):
    """
    Yield body segments as they arrive.

    read1 returns whatever the socket has delivered, up to CHUNK_SIZE,
    instead of blocking until a full chunk is buffered. A stall therefore
    never holds back bytes that were already received.
    """
    while True:
        chunk = response.raw.read1(CHUNK_SIZE, decode_content=True)
        if not chunk:
            return
        yield chunk


def _read_body(response: requests.Response, settings: Settings) -> FetchOk:
    """Stream the body under the idle timeout and byte cap, then decode it."""
    _set_read_timeout(response, settings.idle_timeout)

    chunks = []
    received = 0
    truncated = False

    try:
        for chunk in _iter_received(response):
            chunks.append(chunk)
            received += len(chunk)
            if received > settings.max_html_bytes:
                logger.info(f"Body of {response.url} exceeds {settings.max_html_bytes} bytes, truncating")
                truncated = True
                break
    except BODY_READ_ERRORS as e:
        if not is_timeout_error(e):
            raise FetchError(str(e)) from e
        if received == 0:
            raise FetchTimeoutError(f"No body received within {settings.idle_timeout_ms} ms") from e
        logger.info(f"Idle timeout reading {response.url} after {received} bytes, keeping partial body")
        truncated = True

    buffer = b''.join(chunks)[:settings.max_html_bytes]
    decision = resolve_encoding(buffer, response.headers)
    html = decode_buffer(buffer, decision.name)

    return FetchOk(
        final_url=response.url,
        html=html,
        response_meta=ResponseMeta(
            status=response.status_code,
            headers=dict(response.headers),
            bytes_read=len(buffer),
            truncated=truncated,
            encoding=decision,
        ),
    )


def _get_headers(session: requests.Session, url: str, settings: Settings,
                 deadline: AttemptDeadline) -> requests.Response:
    """GET url, following redirects, until the final headers arrive or the deadline passes."""
    try:
        with deadline:
            response = session.get(
                url,
                headers=REQUEST_HEADERS,
                timeout=(settings.ttfb_timeout, settings.ttfb_timeout),
                allow_redirects=True,
                stream=True,
            )
    except requests.exceptions.RequestException as e:
        if deadline.expired or is_timeout_error(e):
            raise FetchTimeoutError(f"No response within {settings.ttfb_timeout_ms} ms") from e
        raise FetchError(str(e)) from e

    if deadline.expired:
        # Headers completed while the sockets were being shut down
        response.close()
        raise FetchTimeoutError(f"No response within {settings.ttfb_timeout_ms} ms")
    return response


def fetch_once(url: str, settings: Settings) -> Union[FetchOk, FetchNonHtml]:
    """
    Single fetch attempt without retry.

    Raises:
        FetchTimeoutError: headers not received in time, or idle timeout
            before the first body byte
        FetchError: any other network failure
    """
    deadline = AttemptDeadline(settings.ttfb_timeout)
    with _deadline_session(deadline) as session:
        response = _get_headers(session, url, settings, deadline)
        with response:
            content_type = response.headers.get('content-type', '')
            if not is_html_content_type(content_type):
                # Body is never read; closing the response drops the connection
                logger.info(f"Skipping non-HTML response from {response.url} ({content_type or 'no content type'})")
                return FetchNonHtml(
                    final_url=response.url,
                    content_type=content_type,
                    response_meta=ResponseMeta(status=response.status_code, headers=dict(response.headers)),
                )
            return _read_body(response, settings)


def fetch_html(url: str, settings: Settings) -> FetchOutcome:
    """
    Fetch an HTML document, retrying once on timeout.

    Args:
        url: Validated http(s) URL
        settings: Timeouts, byte cap and retry count

    Returns:
        FetchOk, FetchNonHtml, or FetchFailed for terminal errors
    """
    attempt = 0
    while True:
        try:
            return fetch_once(url, settings)
        except FetchTimeoutError as e:
            if attempt >= settings.retries:
                logger.warning(f"Fetch of {url} timed out after {attempt + 1} attempt(s): {e}")
                return FetchFailed(error_kind=ERROR_TIMEOUT, message=str(e))
            attempt += 1
            delay = backoff_delay()
            logger.info(f"Timeout fetching {url}, retrying in {delay * 1000:.0f} ms")
            time.sleep(delay)
        except FetchError as e:
            logger.warning(f"Fetch of {url} failed: {e}")
            return FetchFailed(error_kind=ERROR_FAILED, message=str(e))


def describe_outcome(outcome: FetchOutcome) -> Dict[str, Any]:
    """Compact summary of an outcome for log records."""
    if isinstance(outcome, FetchFailed):
        return {'kind': 'failed', 'error': outcome.error_kind, 'message': outcome.message}
    meta = outcome.response_meta
    summary = {'kind': 'ok' if isinstance(outcome, FetchOk) else 'non-html',
               'final_url': outcome.final_url, 'status': meta.status}
    if isinstance(outcome, FetchOk):
        summary['bytes'] = meta.bytes_read
        summary['truncated'] = meta.truncated
        if meta.encoding:
            summary['encoding'] = f"{meta.encoding.name} ({meta.encoding.source})"
    return summary
