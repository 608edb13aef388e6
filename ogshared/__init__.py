"""Shared fetch and extraction utilities for the Open Graph metadata function."""

from .settings import Settings, parse_api_keys

from .encoding_utils import (
    EncodingDecision,
    resolve_encoding,
    decode_buffer,
    decode_html,
)

from .fetch_utils import (
    ERROR_TIMEOUT,
    ERROR_FAILED,
    FetchError,
    FetchTimeoutError,
    ResponseMeta,
    FetchOk,
    FetchNonHtml,
    FetchFailed,
    fetch_html,
)

from .metadata_utils import (
    FIELD_PROBES,
    MetadataRecord,
    extract_metadata,
    resolve_url,
)

__all__ = [
    # Configuration
    'Settings',
    'parse_api_keys',
    # Encoding
    'EncodingDecision',
    'resolve_encoding',
    'decode_buffer',
    'decode_html',
    # Fetching
    'ERROR_TIMEOUT',
    'ERROR_FAILED',
    'FetchError',
    'FetchTimeoutError',
    'ResponseMeta',
    'FetchOk',
    'FetchNonHtml',
    'FetchFailed',
    'fetch_html',
    # Extraction
    'FIELD_PROBES',
    'MetadataRecord',
    'extract_metadata',
    'resolve_url',
]
