from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any, Callable

from .config import Pattern, parse_library
from .errors import PatternSyncError

_LOGGER = logging.getLogger("attractorscore.patterns")

FetchFn = Callable[[str], bytes]
PostFn = Callable[[str, bytes, Mapping[str, str]], bytes]

DEFAULT_PATTERN = "Ethereal"
ADMIN_HEADER = "x-admin-password"
_TIMEOUT = 10.0

# --- Chord progressions ---
DEFAULT_PATTERNS: Mapping[str, Pattern] = MappingProxyType(
    {
        "Ethereal": Pattern(
            chords=(
                ("C3", "G3", "B3", "E4"),  # CMaj7
                ("A2", "E3", "G3", "C4"),  # Am7
                ("F2", "C3", "E3", "A3"),  # FMaj7
                ("G2", "D3", "F3", "B3"),  # G7
            ),
            bass=("C2", "A1", "F1", "G1"),
        ),
        "Dark Space": Pattern(
            chords=(
                ("C3", "Eb3", "G3", "Bb3"),  # Cm7
                ("Ab2", "Eb3", "G3", "C4"),  # AbMaj7
                ("F2", "C3", "Eb3", "Ab3"),  # Fm7
                ("G2", "D3", "F3", "B3"),  # G7
            ),
            bass=("C2", "Ab1", "F1", "G1"),
        ),
        "Mystery": Pattern(
            chords=(
                ("D3", "F3", "A3", "C4"),  # Dm7
                ("Bb2", "F3", "A3", "D4"),  # BbMaj7
                ("G2", "D3", "F3", "Bb3"),  # Gm7
                ("A2", "E3", "G3", "C4"),  # Am7
            ),
            bass=("D2", "Bb1", "G1", "A1"),
        ),
        "Drone": Pattern(
            chords=(
                ("C3", "G3", "C4"),
                ("C3", "G3", "D4"),
                ("C3", "F3", "C4"),
                ("C3", "G3", "B3"),
            ),
            bass=("C2", "C2", "C2", "C2"),
        ),
    }
)


def fetch_bytes(url: str) -> bytes:
    request = urllib.request.Request(url, headers={"Accept": "application/json"})
    with urllib.request.urlopen(request, timeout=_TIMEOUT) as response:
        status = getattr(response, "status", 200)
        if not 200 <= status < 300:
            raise PatternSyncError(f"GET {url} returned HTTP {status}")
        return response.read()


def post_bytes(url: str, body: bytes, headers: Mapping[str, str]) -> bytes:
    request = urllib.request.Request(url, data=body, headers=dict(headers), method="POST")
    try:
        with urllib.request.urlopen(request, timeout=_TIMEOUT) as response:
            return response.read()
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:200]
        raise PatternSyncError(f"POST {url} returned HTTP {exc.code}: {detail}") from exc
    except urllib.error.URLError as exc:
        raise PatternSyncError(f"POST {url} failed: {exc.reason}") from exc


class PatternLibrary:
    """Named patterns. Remote loads replace the whole library or nothing."""

    def __init__(
        self,
        patterns: Mapping[str, Pattern] | None = None,
        *,
        url: str | None = None,
        fetch: FetchFn | None = None,
        post: PostFn | None = None,
    ) -> None:
        self._patterns: dict[str, Pattern] = dict(patterns if patterns is not None else DEFAULT_PATTERNS)
        self.url = url
        self._fetch = fetch or fetch_bytes
        self._post = post or post_bytes

    def __contains__(self, name: object) -> bool:
        return name in self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def __iter__(self) -> Iterator[str]:
        return iter(self._patterns)

    def names(self) -> list[str]:
        return list(self._patterns)

    def get(self, name: str) -> Pattern | None:
        return self._patterns.get(name)

    def replace(self, patterns: Mapping[str, Pattern]) -> None:
        if not patterns:
            raise ValueError("cannot replace the library with an empty mapping")
        self._patterns = dict(patterns)

    def load(self, url: str | None = None) -> set[str]:
        """Fetch a remote ``name -> pattern`` mapping; on any failure keep the current library."""

        target = url or self.url
        if not target:
            return set(self._patterns)
        try:
            payload = json.loads(self._fetch(target))
            remote = parse_library(payload)
        except Exception as exc:
            _LOGGER.warning("Failed to load cloud patterns, using defaults: %s", exc, exc_info=True)
            return set(self._patterns)
        if not remote:
            _LOGGER.info("Cloud pattern library at %s is empty; keeping current patterns", target)
            return set(self._patterns)
        self._patterns = remote
        _LOGGER.info("Loaded patterns from cloud: %s", ", ".join(remote))
        return set(self._patterns)

    def to_payload(self) -> dict[str, Any]:
        return {name: pattern.to_payload() for name, pattern in self._patterns.items()}

    def save_pattern(
        self,
        name: str,
        *,
        url: str | None = None,
        password: str | None = None,
    ) -> dict[str, Any]:
        """Upsert one pattern on the remote store."""
        pattern = self._patterns.get(name)
        if pattern is None:
            raise PatternSyncError(f"Unknown pattern: {name!r}")
        return self._send({"pattern": name, "data": pattern.to_payload()}, url, password)

    def save(self, *, url: str | None = None, password: str | None = None) -> dict[str, Any]:
        """Replace the remote library with this one."""
        return self._send(self.to_payload(), url, password)

    def _send(self, body: Mapping[str, Any], url: str | None, password: str | None) -> dict[str, Any]:
        target = url or self.url
        if not target:
            raise PatternSyncError("No pattern store URL configured")
        headers = {"Content-Type": "application/json"}
        if password is not None:
            headers[ADMIN_HEADER] = password
        encoded = json.dumps(body, indent=2).encode("utf-8")
        try:
            raw = self._post(target, encoded, headers)
        except PatternSyncError:
            raise
        except OSError as exc:
            raise PatternSyncError(f"POST {target} failed: {exc}") from exc
        try:
            response = json.loads(raw or b"{}")
        except ValueError as exc:
            raise PatternSyncError(f"Pattern store returned invalid JSON: {exc}") from exc
        if not isinstance(response, dict):
            raise PatternSyncError("Pattern store returned a non-object response")
        _LOGGER.info("Saved patterns to %s: %s", target, response)
        return response
