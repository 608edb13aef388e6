"""
Integration tests for the HTTP handler with mocked remote pages.

Uses the `responses` library to mock requests; the full pipeline
(fetch, decode, extract) runs for real.
"""

import pytest
import json
import requests
import responses
from unittest.mock import patch

TARGET = "https://example.com/article"


@pytest.fixture(autouse=True)
def no_sleep():
    with patch('ogshared.fetch_utils.time.sleep') as sleep:
        yield sleep


def call(handle_og_request, mock_flask_request, settings, url=TARGET):
    response, status_code, headers = handle_og_request(mock_flask_request(args={'url': url}), settings)
    return json.loads(response), status_code, headers


class TestEndToEnd:

    @responses.activate
    def test_full_page(self, handle_og_request, mock_flask_request, settings, sample_og_html):
        responses.add(responses.GET, TARGET, body=sample_og_html.encode('utf-8'),
                      content_type="text/html; charset=utf-8")

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 200
        assert data['title'] == "10 Python Tips You Should Know"
        assert data['description'] == "Learn essential Python tips"
        assert data['image'] == "https://example.com/images/cover.jpg"
        assert data['siteName'] == "Example Blog"
        assert data['type'] == "article"
        assert data['lang'] == "en-GB"
        assert data['favicon'] == "https://example.com/static/icon.png"

    @responses.activate
    def test_redirected_page_resolves_against_final_url(self, handle_og_request, mock_flask_request, settings):
        final = "https://m.example.org/mobile/article"
        responses.add(responses.GET, TARGET, status=302, headers={"Location": final})
        responses.add(responses.GET, final,
                      body=b'<meta property="og:image" content="img.png"><title>Mobile</title>',
                      content_type="text/html")

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 200
        assert data['url'] == TARGET
        assert data['finalUrl'] == final
        assert data['image'] == "https://m.example.org/mobile/img.png"
        assert data['favicon'] == "https://m.example.org/favicon.ico"

    @responses.activate
    def test_shift_jis_page(self, handle_og_request, mock_flask_request, settings):
        title = "日本語のページタイトル"
        html = f"<html><head><title>{title}</title></head></html>"
        responses.add(responses.GET, TARGET, body=html.encode("shift_jis"),
                      content_type="text/html; charset=Shift_JIS")

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert data['title'] == title

    @responses.activate
    def test_meta_after_byte_cap_is_not_seen(self, handle_og_request, mock_flask_request):
        from ogshared.settings import Settings
        settings = Settings(max_html_bytes=200)
        body = b"<html><head><title>Early</title>" + b" " * 500 + b'<meta property="og:title" content="Late">'
        responses.add(responses.GET, TARGET, body=body, content_type="text/html")

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 200
        assert data['title'] == "Early"

    @responses.activate
    def test_non_html_is_422(self, handle_og_request, mock_flask_request, settings):
        responses.add(responses.GET, TARGET, json={"hello": "world"})

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 422
        assert data['error'] == 'content is not HTML'
        assert data['contentType'] == 'application/json'
        assert data['finalUrl'] == TARGET


class TestTimeouts:

    @responses.activate
    def test_two_ttfb_timeouts_yield_504_timeout(self, handle_og_request, mock_flask_request,
                                                 settings, no_sleep):
        responses.add(responses.GET, TARGET, body=requests.exceptions.ConnectTimeout())
        responses.add(responses.GET, TARGET, body=requests.exceptions.ConnectTimeout())

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 504
        assert data == {'error': 'timeout', 'url': TARGET}
        assert len(responses.calls) == 2
        assert no_sleep.call_count == 1

    @responses.activate
    def test_single_timeout_recovers(self, handle_og_request, mock_flask_request, settings):
        responses.add(responses.GET, TARGET, body=requests.exceptions.ReadTimeout())
        responses.add(responses.GET, TARGET, body=b"<title>Second try</title>", content_type="text/html")

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 200
        assert data['title'] == "Second try"

    @responses.activate
    def test_connection_error_is_504_with_message(self, handle_og_request, mock_flask_request, settings):
        responses.add(responses.GET, TARGET,
                      body=requests.exceptions.ConnectionError("Name or service not known"))

        data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 504
        assert data['error'] == "Name or service not known"
        assert data['url'] == TARGET
        assert len(responses.calls) == 1

    def test_partial_body_after_stall_still_extracted(self, handle_og_request, mock_flask_request, settings,
                                                      streamed_response, read_timeout_error):
        response = streamed_response(TARGET, [b"<html><head><title>Stalled page</title>", read_timeout_error()])
        with patch('ogshared.fetch_utils.requests.Session.get', return_value=response):
            data, status_code, headers = call(handle_og_request, mock_flask_request, settings)

        assert status_code == 200
        assert data['title'] == "Stalled page"
