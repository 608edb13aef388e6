"""
Charset resolution for fetched HTML.

Remote pages frequently lie about, or omit, their encoding. The resolver
walks a fixed list of sources and takes the first that answers:

1. charset= parameter of the Content-Type header
2. <meta charset> declaration in the first 2048 bytes
3. Statistical detection (chardet), only when confidence > 0.8
4. UTF-8

Labels are mapped to Python codecs through the WHATWG encoding table
(webencodings). Decoding never raises: unknown codecs and decode errors
fall back to UTF-8.
"""

import codecs
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Tuple

import chardet
import webencodings

logger = logging.getLogger(__name__)

META_SCAN_BYTES = 2048
DETECTION_MIN_CONFIDENCE = 0.8
DEFAULT_ENCODING = 'utf-8'

SOURCE_HEADER = 'header'
SOURCE_META_TAG = 'metaTag'
SOURCE_DETECTED = 'detected'
SOURCE_DEFAULT = 'default'

_HEADER_CHARSET_RE = re.compile(r'charset=([^;,\s]+)', re.I)
_META_CHARSET_RE = re.compile(r'<meta[^>]*charset\s*=\s*["\']?([^"\'>\s]+)', re.I)


@dataclass(frozen=True)
class EncodingDecision:
    """Which encoding was picked, and where it came from."""
    name: str
    source: str


def _header_value(headers: Optional[Mapping[str, str]], name: str) -> str:
    """Case-insensitive header lookup that also works on plain dicts."""
    if not headers:
        return ''
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name.lower():
                value = candidate
                break
    return value or ''


def charset_from_header(buffer: bytes, headers: Optional[Mapping[str, str]]) -> Optional[str]:
    match = _HEADER_CHARSET_RE.search(_header_value(headers, 'content-type'))
    return match.group(1).strip('"\'') if match else None


def charset_from_meta(buffer: bytes, headers: Optional[Mapping[str, str]]) -> Optional[str]:
    # ASCII view of the head of the document, only for this scan
    head = buffer[:META_SCAN_BYTES].decode('ascii', errors='replace')
    match = _META_CHARSET_RE.search(head)
    return match.group(1) if match else None


def charset_from_detection(buffer: bytes, headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if not buffer:
        return None
    detected = chardet.detect(buffer)
    if detected and detected.get('encoding') and (detected.get('confidence') or 0) > DETECTION_MIN_CONFIDENCE:
        return detected['encoding']
    return None


# Ordered (source, probe) table - first non-empty answer wins
ENCODING_SOURCES: List[Tuple[str, Callable[[bytes, Optional[Mapping[str, str]]], Optional[str]]]] = [
    (SOURCE_HEADER, charset_from_header),
    (SOURCE_META_TAG, charset_from_meta),
    (SOURCE_DETECTED, charset_from_detection),
]


def resolve_encoding(buffer: bytes, headers: Optional[Mapping[str, str]] = None) -> EncodingDecision:
    """
    Pick the encoding for a response body.

    Args:
        buffer: Raw (possibly truncated) response body
        headers: Response headers; only Content-Type is consulted

    Returns:
        EncodingDecision with a lower-cased encoding name and its source
    """
    for source, probe in ENCODING_SOURCES:
        name = probe(buffer, headers)
        if name:
            return EncodingDecision(name=name.lower(), source=source)
    return EncodingDecision(name=DEFAULT_ENCODING, source=SOURCE_DEFAULT)


def is_utf8(name: str) -> bool:
    """True for utf8, UTF-8, utf_8 and similar spellings."""
    return name.lower().replace('-', '').replace('_', '') == 'utf8'


# Browsers decode these WHATWG encodings with the vendor superset
CODEC_OVERRIDES = {
    'shift_jis': 'cp932',
    'euc-kr': 'cp949',
}


def codec_for_label(label: str) -> str:
    """
    Map a charset label to a Python codec name.

    Labels are looked up in the WHATWG encoding table first, so aliases
    Python does not register itself (Windows-31J, x-sjis, x-euc-jp, ...)
    still decode. Labels outside the table are returned unchanged.
    """
    try:
        encoding = webencodings.lookup(label)
    except LookupError:
        # e.g. the 'replacement' encoding has no Python codec
        encoding = None
    if encoding is None:
        return label
    return CODEC_OVERRIDES.get(encoding.name, encoding.codec_info.name)


def decode_buffer(buffer: bytes, encoding: str) -> str:
    """Decode with the given encoding, falling back to UTF-8 on any problem."""
    if is_utf8(encoding):
        return buffer.decode('utf-8', errors='replace')

    codec = codec_for_label(encoding)
    try:
        codecs.lookup(codec)
    except LookupError:
        logger.debug(f"Unknown encoding {encoding!r}, decoding as utf-8")
        return buffer.decode('utf-8', errors='replace')

    # Truncated bodies may end mid-character, so bad sequences are replaced
    try:
        return buffer.decode(codec, errors='replace')
    except (UnicodeError, LookupError, ValueError) as e:
        # e.g. 'hex' or 'rot13' are registered codecs but not text encodings
        logger.debug(f"Decoding as {encoding!r} failed ({e}), decoding as utf-8")
        return buffer.decode('utf-8', errors='replace')


def decode_html(buffer: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Resolve the encoding of an HTML body and decode it to text."""
    return decode_buffer(buffer, resolve_encoding(buffer, headers).name)
