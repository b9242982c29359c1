"""
Tests for filtersync.patches: RCS patch application and patch chains.
"""

import asyncio

import pytest

from filtersync.patches import (
    PatchError,
    apply_patch,
    apply_rcs,
    checksum,
    split_sections,
)

FILTER_URL = "https://filters.test/filters/2.txt"

V1 = [
    "! Title: Base",
    "! Version: 1.0",
    "! Diff-Path: ../patches/2/v1.patch",
    "||a.example^",
    "||b.example^",
]

# v1 -> v2: new version and diff path, drop b, add c
V1_TO_V2 = "\n".join([
    "d2 2",
    "a3 2",
    "! Version: 2.0",
    "! Diff-Path: ../patches/2/v2.patch",
    "d5 1",
    "a5 1",
    "||c.example^",
])

V2 = [
    "! Title: Base",
    "! Version: 2.0",
    "! Diff-Path: ../patches/2/v2.patch",
    "||a.example^",
    "||c.example^",
]


def served(patches):
    calls = []

    async def fetch(url):
        calls.append(url)
        return patches.get(url)

    return fetch, calls


class TestApplyRcs:
    def test_delete_and_add(self):
        assert apply_rcs(V1, V1_TO_V2.splitlines()) == V2

    def test_add_at_start(self):
        assert apply_rcs(["b"], ["a0 1", "a"]) == ["a", "b"]

    def test_delete_out_of_range(self):
        with pytest.raises(PatchError):
            apply_rcs(["a"], ["d2 1"])

    def test_truncated_add(self):
        with pytest.raises(PatchError):
            apply_rcs(["a"], ["a1 2", "b"])

    def test_invalid_command(self):
        with pytest.raises(PatchError):
            apply_rcs(["a"], ["x1 1"])


class TestSections:
    def test_anonymous_patch(self):
        sections = split_sections("d1 1\n")
        assert len(sections) == 1
        assert sections[0].name is None
        assert sections[0].body == ["d1 1"]

    def test_batch_patch(self):
        text = "diff name:one lines:1\nd1 1\ndiff name:two lines:1\nd2 1\n"
        sections = split_sections(text)
        assert [s.name for s in sections] == ["one", "two"]
        assert sections[1].body == ["d2 1"]
        assert sections[1].line_count == 1


class TestApplyPatch:
    def test_chain_applied_until_feed_runs_dry(self):
        fetch, calls = served({"https://filters.test/patches/2/v1.patch": V1_TO_V2})
        result = asyncio.run(apply_patch(FILTER_URL, "\n".join(V1), fetch))
        assert result.splitlines() == V2
        assert calls == [
            "https://filters.test/patches/2/v1.patch",
            "https://filters.test/patches/2/v2.patch",
        ]

    def test_no_diff_path_returns_none(self):
        fetch, calls = served({})
        assert asyncio.run(apply_patch(FILTER_URL, "! Version: 1\n||a^", fetch)) is None
        assert calls == []

    def test_not_yet_published_returns_content_unchanged(self):
        fetch, _ = served({})
        content = "\n".join(V1)
        assert asyncio.run(apply_patch(FILTER_URL, content, fetch)) == content

    def test_checksum_validated(self):
        good = f"diff name:base checksum:{checksum(V2)} lines:7\n" + V1_TO_V2
        fetch, _ = served({"https://filters.test/patches/2/v1.patch": good})
        result = asyncio.run(apply_patch(FILTER_URL, "\n".join(V1), fetch))
        assert result.splitlines() == V2

    def test_unicode_separators_do_not_shift_lines(self):
        odd = "||a.example^$domain=x\u2028y\x0cz"
        old = V1[:3] + [odd] + V1[4:]
        new = V2[:3] + [odd] + V2[4:]
        patch = f"diff name:base checksum:{checksum(new)} lines:7\n" + V1_TO_V2
        fetch, _ = served({"https://filters.test/patches/2/v1.patch": patch})
        result = asyncio.run(apply_patch(FILTER_URL, "\n".join(old), fetch))
        assert result.split("\n") == new

    def test_checksum_mismatch_raises(self):
        bad = "diff name:base checksum:0000 lines:7\n" + V1_TO_V2
        fetch, _ = served({"https://filters.test/patches/2/v1.patch": bad})
        with pytest.raises(PatchError, match="checksum"):
            asyncio.run(apply_patch(FILTER_URL, "\n".join(V1), fetch))

    def test_named_section_selected(self):
        content = V1[:2] + ["! Diff-Path: ../patches/batch.patch#base"] + V1[3:]
        batch = "\n".join([
            "diff name:other lines:1",
            "d1 1",
            "diff name:base lines:4",
            "d3 1",
            "a3 1",
            "! Diff-Path: ../patches/next.patch",
            "d5 1",
        ])
        fetch, calls = served({"https://filters.test/patches/batch.patch": batch})
        result = asyncio.run(apply_patch(FILTER_URL, "\n".join(content), fetch))
        assert result.splitlines() == [
            "! Title: Base",
            "! Version: 1.0",
            "! Diff-Path: ../patches/next.patch",
            "||a.example^",
        ]
        assert calls[-1] == "https://filters.test/patches/next.patch"

    def test_missing_section_raises(self):
        content = V1[:2] + ["! Diff-Path: ../patches/batch.patch#base"] + V1[3:]
        fetch, _ = served({"https://filters.test/patches/batch.patch": "diff name:other\nd1 1\n"})
        with pytest.raises(PatchError):
            asyncio.run(apply_patch(FILTER_URL, "\n".join(content), fetch))
