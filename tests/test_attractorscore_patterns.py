import json
import logging
from collections.abc import Mapping

import pytest

from attractorscore.errors import PatternSyncError
from attractorscore.patterns import ADMIN_HEADER, DEFAULT_PATTERNS, PatternLibrary

_REMOTE = {
    "Glass": {"chords": [["E3", "B3"], ["A2", "E3"]], "bass": ["E2", "A1"]},
    "Fog": {"chords": [["D3", "A3"]], "bass": ["D2"]},
}


def _fetch_json(payload: object):
    def _fetch(url: str) -> bytes:
        _ = url
        return json.dumps(payload).encode("utf-8")

    return _fetch


def _failing_fetch(url: str) -> bytes:
    raise OSError(f"connection refused: {url}")


def test_defaults_are_compiled_in() -> None:
    library = PatternLibrary()
    assert set(library) == {"Ethereal", "Dark Space", "Mystery", "Drone"}
    assert library.get("Drone") is DEFAULT_PATTERNS["Drone"]


def test_load_replaces_library_wholesale() -> None:
    library = PatternLibrary(fetch=_fetch_json(_REMOTE))
    names = library.load("https://example.test/api/audio")
    assert names == {"Glass", "Fog"}
    assert "Ethereal" not in library


def test_load_failure_keeps_current_library(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="attractorscore.patterns")
    library = PatternLibrary(fetch=_failing_fetch)
    names = library.load("https://example.test/api/audio")
    assert names == set(DEFAULT_PATTERNS)
    assert "Failed to load cloud patterns" in caplog.text


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"Broken": {"chords": []}},
        {"Broken": {"chords": [["C3"], ["D3"]], "bass": ["C2"]}},
    ],
)
def test_load_invalid_payload_is_all_or_nothing(payload: object) -> None:
    library = PatternLibrary(fetch=_fetch_json(payload))
    library.load("https://example.test/api/audio")
    assert set(library) == set(DEFAULT_PATTERNS)


def test_load_empty_object_keeps_current_library() -> None:
    library = PatternLibrary(fetch=_fetch_json({}))
    assert library.load("https://example.test/api/audio") == set(DEFAULT_PATTERNS)


def test_load_without_url_is_noop() -> None:
    def _unexpected(url: str) -> bytes:
        raise AssertionError(f"fetch called for {url}")

    library = PatternLibrary(fetch=_unexpected)
    assert library.load() == set(DEFAULT_PATTERNS)


class _RecordingPost:
    def __init__(self, response: bytes = b'{"success": true}') -> None:
        self.calls: list[tuple[str, dict[str, object], dict[str, str]]] = []
        self.response = response

    def __call__(self, url: str, body: bytes, headers: Mapping[str, str]) -> bytes:
        self.calls.append((url, json.loads(body), dict(headers)))
        return self.response


def test_save_pattern_posts_partial_update() -> None:
    post = _RecordingPost()
    library = PatternLibrary(url="https://example.test/api/audio", post=post)
    response = library.save_pattern("Drone", password="hunter2")

    assert response == {"success": True}
    url, body, headers = post.calls[0]
    assert url == "https://example.test/api/audio"
    assert body["pattern"] == "Drone"
    assert body["data"]["bass"] == ["C2", "C2", "C2", "C2"]
    assert headers[ADMIN_HEADER] == "hunter2"
    assert headers["Content-Type"] == "application/json"


def test_save_posts_full_library_without_password() -> None:
    post = _RecordingPost()
    library = PatternLibrary(url="https://example.test/api/audio", post=post)
    library.save()

    _, body, headers = post.calls[0]
    assert set(body) == set(DEFAULT_PATTERNS)
    assert ADMIN_HEADER not in headers


def test_save_errors_raise_pattern_sync_error() -> None:
    library = PatternLibrary(post=_RecordingPost())
    with pytest.raises(PatternSyncError):
        library.save()
    with pytest.raises(PatternSyncError):
        library.save_pattern("Missing", url="https://example.test/api/audio")

    bad = PatternLibrary(url="https://example.test/api/audio", post=_RecordingPost(b"not json"))
    with pytest.raises(PatternSyncError):
        bad.save()
