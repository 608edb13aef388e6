"""
Open Graph / Twitter card metadata extraction.

Each field has an ordered list of probes. The first probe that yields a
non-empty (trimmed) value wins; later probes are never consulted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from requests.utils import requote_uri

DEFAULT_FAVICON_PATH = '/favicon.ico'

Probe = Callable[[BeautifulSoup], Optional[str]]


def _clean(value) -> Optional[str]:
    if isinstance(value, list):
        value = ' '.join(value)
    if not value:
        return None
    value = value.strip()
    return value or None


def meta_probe(attribute: str, key: str) -> Probe:
    """
    Probe for <meta {attribute}="{key}">.

    Only the first matching tag is considered. Its value is read from
    `content`, then `value`.
    """
    def probe(soup: BeautifulSoup) -> Optional[str]:
        tag = soup.find('meta', attrs={attribute: key})
        if not tag:
            return None
        return _clean(tag.get('content')) or _clean(tag.get('value'))
    probe.__name__ = f'meta[{attribute}={key}]'
    return probe


def og(key: str) -> Probe:
    return meta_probe('property', key)


def named(key: str) -> Probe:
    return meta_probe('name', key)


def title_tag(soup: BeautifulSoup) -> Optional[str]:
    tag = soup.find('title')
    return _clean(tag.get_text()) if tag else None


def html_lang(soup: BeautifulSoup) -> Optional[str]:
    tag = soup.find('html')
    return _clean(tag.get('lang')) if tag else None


def link_href(selector: str) -> Probe:
    def probe(soup: BeautifulSoup) -> Optional[str]:
        tag = soup.select_one(selector)
        return _clean(tag.get('href')) if tag else None
    probe.__name__ = selector
    return probe


def literal(value: str) -> Probe:
    return lambda soup: value


FIELD_PROBES: Dict[str, List[Probe]] = {
    'title': [og('og:title'), named('twitter:title'), title_tag],
    'description': [og('og:description'), named('twitter:description'), named('description')],
    'image': [
        og('og:image:secure_url'),
        og('og:image:url'),
        og('og:image'),
        named('twitter:image'),
    ],
    'site_name': [og('og:site_name')],
    'type': [og('og:type')],
    'lang': [html_lang, og('og:locale')],
    'favicon': [
        link_href('link[rel~="icon"]'),
        link_href('link[rel="shortcut icon"]'),
        literal(DEFAULT_FAVICON_PATH),
    ],
}

# Fields holding URLs that must be made absolute against the final URL
URL_FIELDS = ('image', 'favicon')


def pick_first(soup: BeautifulSoup, probes: List[Probe]) -> Optional[str]:
    """Return the first non-empty probe result."""
    for probe in probes:
        value = probe(soup)
        if value:
            return value
    return None


def resolve_url(base: str, maybe: Optional[str]) -> Optional[str]:
    """
    Resolve a possibly relative URL against base.

    Returns None when there is nothing to resolve or the result is not
    absolute; never returns a relative URL.
    """
    if not maybe:
        return None
    try:
        resolved = urljoin(base, maybe)
        if not urlparse(resolved).scheme:
            return None
    except ValueError:
        return None
    return requote_uri(resolved)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass
class MetadataRecord:
    url: str
    final_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    site_name: Optional[str] = None
    type: Optional[str] = None
    lang: Optional[str] = None
    favicon: Optional[str] = None
    fetched_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict:
        """JSON payload; absent optional fields are left out."""
        payload = {
            'url': self.url,
            'finalUrl': self.final_url,
            'title': self.title,
            'description': self.description,
            'image': self.image,
            'siteName': self.site_name,
            'type': self.type,
            'lang': self.lang,
            'favicon': self.favicon,
            'fetchedAt': self.fetched_at,
        }
        return {key: value for key, value in payload.items() if value is not None}


def extract_metadata(html: str, final_url: str, url: Optional[str] = None) -> MetadataRecord:
    """
    Extract preview metadata from an HTML document.

    Args:
        html: Decoded document
        final_url: URL after redirects; relative image/favicon URLs resolve against it
        url: URL originally requested (defaults to final_url)

    Returns:
        MetadataRecord, stamped with the time extraction finished
    """
    soup = BeautifulSoup(html or '', 'html.parser')

    values = {name: pick_first(soup, probes) for name, probes in FIELD_PROBES.items()}
    for name in URL_FIELDS:
        values[name] = resolve_url(final_url, values[name])

    return MetadataRecord(
        url=url or final_url,
        final_url=final_url,
        fetched_at=_utc_now_iso(),
        **values,
    )
