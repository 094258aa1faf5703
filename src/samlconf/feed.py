"""Release feed lookups used to announce plugin updates."""
from __future__ import annotations

import re
from dataclasses import dataclass
from xml.etree.ElementTree import Element

import httpx
from defusedxml import ElementTree as DefusedElementTree
from defusedxml.common import DefusedXmlException

ATOM_NS = "{http://www.w3.org/2005/Atom}"
_TITLE_VERSION = re.compile(r".* (.+)")


class FeedError(RuntimeError):
    """Raised when the release feed cannot be consulted."""


class FeedUnreachable(FeedError):
    """Raised when the feed could not be fetched."""


class FeedUnparseable(FeedError):
    """Raised when the feed was fetched but its content is unusable."""


@dataclass(frozen=True, slots=True)
class VersionCheck:
    """Outcome of comparing the newest feed entry with a running version.

    ``latest`` is ``True`` when the feed advertises a version different from
    *compare*, i.e. when an update notification should be shown.
    """

    git_version: str
    compare: str
    git_url: str
    latest: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "gitVersion": self.git_version,
            "compare": self.compare,
            "gitUrl": self.git_url,
            "latest": self.latest,
        }


class VersionFeed:
    """Fetch an Atom release feed and compare its newest entry."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Configure the feed location and an optional pre-built HTTP client."""
        self.url = url
        self.timeout = timeout
        self._client = client

    def fetch(self) -> str:
        """Return the raw feed document."""
        try:
            if self._client is not None:
                response = self._client.get(self.url, timeout=self.timeout)
            else:
                with httpx.Client(follow_redirects=True) as client:
                    response = client.get(self.url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FeedUnreachable(
                f"Could not retrieve version information from: {self.url} "
                f"is internet access blocked? ({exc})"
            ) from exc
        return response.text

    def check(self, compare: str) -> VersionCheck:
        """Compare *compare* against the newest release in the feed."""
        title, href = parse_latest_entry(self.fetch(), source=self.url)
        match = _TITLE_VERSION.match(title)
        if match is None:
            raise FeedUnparseable(
                f"Could not correctly parse xml information from: {self.url} "
                f"(entry title {title!r} carries no version)"
            )
        version = match.group(1)
        # Plain inequality: a locally newer build also reports an update.
        return VersionCheck(
            git_version=version,
            compare=compare,
            git_url=href,
            latest=version != compare,
        )


def parse_latest_entry(document: str, *, source: str = "feed") -> tuple[str, str]:
    """Return ``(title, link href)`` of the first entry in an Atom *document*."""
    try:
        root = DefusedElementTree.fromstring(document)
    except (DefusedElementTree.ParseError, DefusedXmlException) as exc:
        raise FeedUnparseable(
            f"Could not correctly parse xml information from: {source} ({exc})"
        ) from exc

    entry = _find(root, "entry")
    if entry is None:
        raise FeedUnparseable(f"Could not correctly parse xml information from: {source}")
    title_element = _find(entry, "title")
    link_element = _find(entry, "link")
    title = (title_element.text or "").strip() if title_element is not None else ""
    href = link_element.get("href", "") if link_element is not None else ""
    if not title:
        raise FeedUnparseable(f"Could not correctly parse xml information from: {source}")
    return title, href


def _find(parent: Element, tag: str) -> Element | None:
    found = parent.find(f"{ATOM_NS}{tag}")
    if found is None:
        found = parent.find(tag)
    return found


__all__ = [
    "FeedError",
    "FeedUnparseable",
    "FeedUnreachable",
    "VersionCheck",
    "VersionFeed",
    "parse_latest_entry",
]
