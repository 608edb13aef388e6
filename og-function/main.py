"""
Open Graph Metadata Cloud Function

GET ?url=<http(s) URL> returns preview metadata for the page:
title, description, image, site name, type, language and favicon.

Responsibilities:
- Gate requests on an API key (only when API_KEYS is configured)
- Validate the target URL
- Fetch the page with bounded waits (see ogshared.fetch_utils)
- Extract Open Graph / Twitter card / fallback metadata

Does NOT:
- Render JavaScript
- Cache results (only a Cache-Control hint is sent)
- Manage API keys (API_KEYS is set at deploy time)

Status codes:
    200 metadata, 400 invalid url, 401 unauthorized,
    422 content is not HTML, 504 fetch timeout/failure
"""

import functions_framework
import json
import logging
import os
import sys
from urllib.parse import urlparse

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from ogshared.settings import Settings
from ogshared.fetch_utils import FetchFailed, FetchNonHtml, ERROR_TIMEOUT, describe_outcome, fetch_html
from ogshared.metadata_utils import extract_metadata

# Configuration (read once per instance)
SETTINGS = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format='%(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger('og-function')

CACHE_CONTROL = 'public, max-age=86400'  # 1 day
UNAUTHORIZED_MESSAGE = "Valid API key required in X-API-Key header or 'key' query parameter"


def is_http_url(value: str) -> bool:
    """True for absolute http:// or https:// URLs with a host."""
    if not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def get_api_key(request) -> str:
    """API key from the X-API-Key header, else the `key` query parameter."""
    return request.headers.get('X-API-Key') or request.args.get('key') or ''


def json_response(payload: dict, status: int, extra_headers: dict = None) -> tuple:
    headers = {
        'Content-Type': 'application/json; charset=utf-8',
        'Access-Control-Allow-Origin': '*',
    }
    if extra_headers:
        headers.update(extra_headers)
    return (json.dumps(payload, ensure_ascii=False), status, headers)


def handle_og_request(request, settings: Settings) -> tuple:
    """Process one metadata request with explicit settings."""
    if not settings.is_key_allowed(get_api_key(request)):
        return json_response({
            'error': 'unauthorized',
            'message': UNAUTHORIZED_MESSAGE,
        }, 401)

    target = (request.args.get('url') or '').strip()
    if not is_http_url(target):
        return json_response({'error': 'invalid url'}, 400)

    outcome = fetch_html(target, settings)
    logger.debug(f"Fetch outcome for {target}: {describe_outcome(outcome)}")

    if isinstance(outcome, FetchFailed):
        error = 'timeout' if outcome.error_kind == ERROR_TIMEOUT else (outcome.message or 'fetch failed')
        return json_response({'error': error, 'url': target}, 504)

    if isinstance(outcome, FetchNonHtml):
        return json_response({
            'error': 'content is not HTML',
            'url': target,
            'finalUrl': outcome.final_url,
            'contentType': outcome.content_type,
        }, 422)

    record = extract_metadata(outcome.html, outcome.final_url, url=target)
    return json_response(record.to_dict(), 200, {'Cache-Control': CACHE_CONTROL})


@functions_framework.http
def og(request):
    """
    Main Cloud Function entry point.

    Query parameters:
        url: page to describe (required)
        key: API key, when not sent as the X-API-Key header
    """
    # Handle CORS
    if request.method == 'OPTIONS':
        headers = {
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET',
            'Access-Control-Allow-Headers': 'Content-Type, X-API-Key',
            'Access-Control-Max-Age': '3600'
        }
        return ('', 204, headers)

    try:
        return handle_og_request(request, SETTINGS)
    except Exception:
        logger.exception("Unhandled error while processing request")
        return json_response({'error': 'internal error'}, 500)
