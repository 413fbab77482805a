"""Tests for sync path normalization."""

from __future__ import annotations

import string

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from syncserver.exceptions import InvalidPathError
from syncserver.services.path_service import file_name, is_hidden_path, normalize_sync_path

PROPERTY_SETTINGS = settings(
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_SEGMENT = st.text(
    alphabet=string.ascii_letters + string.digits + "-_ ",
    min_size=1,
    max_size=12,
).filter(lambda s: s.strip() == s and s not in (".", ".."))


class TestNormalizeSyncPath:
    def test_plain_relative_path_unchanged(self) -> None:
        assert normalize_sync_path("docs/report.pdf") == "docs/report.pdf"

    def test_backslashes_become_forward_slashes(self) -> None:
        assert normalize_sync_path("docs\\sub\\a.txt") == "docs/sub/a.txt"

    def test_empty_and_dot_segments_dropped(self) -> None:
        assert normalize_sync_path("docs//./a.txt") == "docs/a.txt"

    def test_unicode_names_preserved(self) -> None:
        assert normalize_sync_path("фото/отпуск.jpg") == "фото/отпуск.jpg"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "/etc/passwd",
            "\\server\\share",
            "C:/Windows/system.ini",
            "../secret",
            "docs/../../secret",
            "docs/..",
            "a\x00b",
            "line\nbreak.txt",
            ".",
            "./",
        ],
    )
    def test_rejects_unsafe_paths(self, raw: str) -> None:
        with pytest.raises(InvalidPathError):
            normalize_sync_path(raw)

    def test_rejects_overlong_path(self) -> None:
        with pytest.raises(InvalidPathError, match="too long"):
            normalize_sync_path("a/" * 3000)

    def test_invalid_path_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            normalize_sync_path("../x")

    @PROPERTY_SETTINGS
    @given(segments=st.lists(_SEGMENT, min_size=1, max_size=6))
    def test_normalization_is_idempotent(self, segments: list[str]) -> None:
        once = normalize_sync_path("/".join(segments))
        assert normalize_sync_path(once) == once

    @PROPERTY_SETTINGS
    @given(
        prefix=st.lists(_SEGMENT, max_size=3),
        suffix=st.lists(_SEGMENT, max_size=3),
    )
    def test_any_parent_segment_is_rejected(self, prefix: list[str], suffix: list[str]) -> None:
        raw = "/".join([*prefix, "..", *suffix])
        with pytest.raises(InvalidPathError):
            normalize_sync_path(raw)

    @PROPERTY_SETTINGS
    @given(segments=st.lists(_SEGMENT, min_size=1, max_size=6))
    def test_normalized_paths_are_relative(self, segments: list[str]) -> None:
        result = normalize_sync_path("/".join(segments))
        assert not result.startswith("/")
        assert ".." not in result.split("/")


class TestHiddenPaths:
    @pytest.mark.parametrize(
        "path",
        [".DS_Store", ".git/config", "docs/.hidden/file.txt", "docs/.a.txt.foldersync-tmp"],
    )
    def test_dot_components_are_hidden(self, path: str) -> None:
        assert is_hidden_path(path)

    @pytest.mark.parametrize("path", ["docs/a.txt", "archive.tar.gz", "a/b.c/d"])
    def test_regular_paths_are_visible(self, path: str) -> None:
        assert not is_hidden_path(path)


class TestFileName:
    def test_nested(self) -> None:
        assert file_name("docs/sub/a.txt") == "a.txt"

    def test_top_level(self) -> None:
        assert file_name("a.txt") == "a.txt"
