"""
Shared pytest fixtures for the Open Graph metadata function tests.
"""

import pytest
import sys
import importlib.util
from pathlib import Path

import requests
from requests.structures import CaseInsensitiveDict
from urllib3.exceptions import ReadTimeoutError

from ogshared.settings import Settings

# Project root for finding Cloud Function modules
PROJECT_ROOT = Path(__file__).parent.parent


def _load_module_from_path(module_name: str, file_path: Path):
    """Load a module from a specific file path."""
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


# Load the Cloud Function module with a unique name at module load time
_og_function_module = _load_module_from_path(
    'og_function_main',
    PROJECT_ROOT / 'og-function' / 'main.py'
)


# ============================================================================
# Cloud Function Fixtures
# ============================================================================

@pytest.fixture
def og_module():
    """Returns the loaded og-function module (for patching)."""
    return _og_function_module


@pytest.fixture
def og():
    """Returns main entry point from og-function."""
    return _og_function_module.og


@pytest.fixture
def handle_og_request():
    """Returns handle_og_request function from og-function."""
    return _og_function_module.handle_og_request


@pytest.fixture
def is_http_url():
    """Returns is_http_url function from og-function."""
    return _og_function_module.is_http_url


@pytest.fixture
def settings():
    """Default settings with no API keys and fast timeouts."""
    return Settings(ttfb_timeout_ms=1000, idle_timeout_ms=500)


@pytest.fixture
def mock_flask_request():
    """Factory for creating mock Flask request objects."""
    class MockRequest:
        def __init__(self, args=None, headers=None, method='GET'):
            self.args = dict(args or {})
            self.headers = CaseInsensitiveDict(headers or {})
            self.method = method
            self.data = b''

    return MockRequest


# ============================================================================
# Streamed response helpers
# ============================================================================

class FakeRaw:
    """
    Stand-in for urllib3's HTTPResponse.

    Each read1() call returns the next item of `items`; an exception
    instance in the list is raised at that point of the stream instead.
    """

    def __init__(self, items, connection=None):
        self.items = list(items)
        self.connection = connection
        self.consumed = []
        self.read_calls = 0
        self.closed = False

    def read1(self, amt=None, decode_content=None):
        self.read_calls += 1
        if not self.items:
            return b''
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        self.consumed.append(item)
        return item

    def close(self):
        self.closed = True


def read_timeout():
    return ReadTimeoutError(None, 'https://example.com', 'Read timed out.')


def make_streamed_response(url, items, content_type='text/html', status=200, connection=None):
    """Build a real requests.Response backed by a FakeRaw body."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.headers = CaseInsensitiveDict({'Content-Type': content_type} if content_type else {})
    response.raw = FakeRaw(items, connection=connection)
    return response


@pytest.fixture
def streamed_response():
    """Factory for streamed responses with scripted chunks and errors."""
    return make_streamed_response


@pytest.fixture
def read_timeout_error():
    """Factory for the urllib3 error raised when a socket read times out."""
    return read_timeout


# ============================================================================
# Sample documents
# ============================================================================

@pytest.fixture
def sample_og_html():
    """A page with full Open Graph and Twitter card markup."""
    return """
    <!DOCTYPE html>
    <html lang="en-GB">
    <head>
        <title>10 Python Tips | Example Blog</title>
        <meta property="og:title" content="10 Python Tips You Should Know">
        <meta name="twitter:title" content="Twitter Title">
        <meta property="og:description" content="Learn essential Python tips">
        <meta name="description" content="Plain description">
        <meta property="og:image" content="/images/cover.jpg">
        <meta name="twitter:image" content="https://cdn.example.com/twitter.jpg">
        <meta property="og:site_name" content="Example Blog">
        <meta property="og:type" content="article">
        <meta property="og:locale" content="en_GB">
        <link rel="icon" href="/static/icon.png">
    </head>
    <body>
        <article><h1>10 Python Tips You Should Know</h1></article>
    </body>
    </html>
    """


@pytest.fixture
def title_only_html():
    """A page with nothing but a <title>."""
    return "<html><head><title>Foo</title></head><body></body></html>"
