"""
Runtime configuration for the Open Graph metadata function.

Settings are read from the environment once, when the Cloud Function module
is imported, and passed explicitly into the fetch pipeline. Core modules never
read os.environ themselves.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

# Network tunables (overridable via environment)
TTFB_TIMEOUT_MS = 8000  # Time to first byte
READ_IDLE_TIMEOUT_MS = 5000  # Max gap between body chunks
MAX_HTML_BYTES = 1_500_000  # 1.5MB
RETRIES = 1  # Retry once on timeout


def parse_api_keys(raw: Optional[str]) -> FrozenSet[str]:
    """Split a comma-separated key list, dropping blanks."""
    if not raw:
        return frozenset()
    return frozenset(key.strip() for key in raw.split(',') if key.strip())


def _int_from_env(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        number = int(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if number < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {number}")
    return number


@dataclass(frozen=True)
class Settings:
    """Immutable configuration shared by a single function instance."""

    api_keys: FrozenSet[str] = field(default_factory=frozenset)
    ttfb_timeout_ms: int = TTFB_TIMEOUT_MS
    idle_timeout_ms: int = READ_IDLE_TIMEOUT_MS
    max_html_bytes: int = MAX_HTML_BYTES
    retries: int = RETRIES
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Recognised variables:
            API_KEYS: comma-separated list of accepted API keys
            OG_TTFB_TIMEOUT_MS, OG_IDLE_TIMEOUT_MS, OG_MAX_HTML_BYTES, OG_RETRIES
            LOG_LEVEL

        Raises:
            ValueError: if a numeric variable is not an integer or is out of range
        """
        env = os.environ if env is None else env
        return cls(
            api_keys=parse_api_keys(env.get('API_KEYS')),
            # A zero socket timeout would mean non-blocking reads
            ttfb_timeout_ms=_int_from_env(env, 'OG_TTFB_TIMEOUT_MS', TTFB_TIMEOUT_MS, minimum=1),
            idle_timeout_ms=_int_from_env(env, 'OG_IDLE_TIMEOUT_MS', READ_IDLE_TIMEOUT_MS, minimum=1),
            max_html_bytes=_int_from_env(env, 'OG_MAX_HTML_BYTES', MAX_HTML_BYTES, minimum=1),
            retries=_int_from_env(env, 'OG_RETRIES', RETRIES),
            log_level=(env.get('LOG_LEVEL') or 'INFO').strip().upper(),
        )

    @property
    def ttfb_timeout(self) -> float:
        return self.ttfb_timeout_ms / 1000

    @property
    def idle_timeout(self) -> float:
        return self.idle_timeout_ms / 1000

    def is_key_allowed(self, key: Optional[str]) -> bool:
        """
        Check an API key against the configured set.

        With no keys configured the gate is open to every request.
        """
        if not self.api_keys:
            return True
        if not key:
            return False
        return key in self.api_keys
