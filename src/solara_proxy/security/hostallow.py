"""Audio target validation against a domain allow-list.

The audio path fetches whatever URL the caller hands it, so this check is the
only thing that stops the proxy from being used as an open relay.

Example:
    allow_list = HostAllowList(domains=["kuwo.cn"])

    url = allow_list.normalize("https://music.kuwo.cn/a.mp3")
    if url is None:
        return 400  # Invalid target
    # url == "http://music.kuwo.cn/a.mp3"
"""

from __future__ import annotations

import re
import urllib.parse
from collections.abc import Sequence
from dataclasses import dataclass, field

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Dot-separated DNS labels: letters, digits and inner hyphens only
HOSTNAME_PATTERN = re.compile(
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*",
    re.IGNORECASE,
)


@dataclass
class TargetCheckResult:
    """Result of a target URL check."""

    allowed: bool
    url: str | None
    reason: str


@dataclass
class HostAllowList:
    """Validates caller-supplied audio URLs.

    A URL is accepted when it is absolute, uses http or https, and its
    hostname equals one of ``domains`` or is a subdomain of one
    (case-insensitive). Accepted URLs are rewritten to plain http.
    """

    domains: Sequence[str] = field(default_factory=lambda: ["kuwo.cn"])

    _patterns: list[re.Pattern[str]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        for domain in self.domains:
            domain = domain.strip().strip(".")
            if domain:
                self._patterns.append(
                    re.compile(rf"(?:.+\.)?{re.escape(domain)}", re.IGNORECASE)
                )

    def is_allowed_host(self, hostname: str | None) -> bool:
        if not hostname:
            return False
        return any(pattern.fullmatch(hostname) for pattern in self._patterns)

    def normalize(self, raw: str) -> str | None:
        """Return the http-normalized URL, or None if the target is rejected."""
        return self.check(raw).url

    def check(self, raw: str) -> TargetCheckResult:
        """Check a target URL with detailed result."""
        try:
            parts = urllib.parse.urlsplit(raw.strip())
            hostname = parts.hostname
            port = parts.port
        except ValueError:
            return TargetCheckResult(allowed=False, url=None, reason="Malformed URL")

        if not parts.scheme or not parts.netloc:
            return TargetCheckResult(allowed=False, url=None, reason="URL is not absolute")

        if parts.scheme not in ALLOWED_SCHEMES:
            return TargetCheckResult(
                allowed=False,
                url=None,
                reason=f"Unsupported scheme: {parts.scheme}",
            )

        if not hostname or not HOSTNAME_PATTERN.fullmatch(hostname):
            return TargetCheckResult(
                allowed=False,
                url=None,
                reason=f"Invalid hostname: {hostname!r}",
            )

        if not self.is_allowed_host(hostname):
            return TargetCheckResult(
                allowed=False,
                url=None,
                reason=f"Host not allowed: {hostname}",
            )

        netloc = parts.netloc
        if parts.scheme == "https" and port == 443:
            # The https default port would be wrong once the scheme is http
            netloc = netloc.rsplit(":", 1)[0]

        url = urllib.parse.urlunsplit(("http", netloc, parts.path, parts.query, parts.fragment))
        return TargetCheckResult(allowed=True, url=url, reason="Host in allow list")


def create_host_allow_list(domains: Sequence[str] | None = None) -> HostAllowList:
    """Create an allow-list for the given domains (defaults to kuwo.cn)."""
    if not domains:
        return HostAllowList()
    return HostAllowList(domains=list(domains))
