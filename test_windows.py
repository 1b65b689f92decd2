#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for windowed commit aggregation.

This script validates:
- Window boundary computation for every fixed period
- Committer identity precedence
- Lines added from listing stats and commit detail fallbacks
- Empty-repository answers versus real failures
"""

import datetime
import logging
import sys
from pathlib import Path

import httpx

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

from repo_metrics import (
    CommitWindowAggregator,
    GitHubAPIClient,
    PERIOD_WINDOWS,
    RepositoryRef,
    commit_identity,
    setup_time_windows,
)

LOGGER = logging.getLogger("repo_metrics.tests")
NOW = datetime.datetime(2025, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)


def make_aggregator(handler, max_workers=1):
    client = GitHubAPIClient(
        "test-token",
        api_base="https://api.github.com",
        transport=httpx.MockTransport(handler),
    )
    return client, CommitWindowAggregator(client, LOGGER, max_workers=max_workers)


def repo(full_name):
    return RepositoryRef(
        id=full_name,
        name=full_name.split("/")[1],
        url=f"https://github.com/{full_name}",
        full_name=full_name,
    )


def test_setup_time_windows():
    """Test that every period shares one end and spans its day count."""
    print("🧪 Testing time window setup...")

    windows = setup_time_windows(NOW)

    assert list(windows) == ["7days", "30days", "60days", "90days", "180days", "365days"]
    for key, window in windows.items():
        assert window["days"] == PERIOD_WINDOWS[key]
        assert window["end"] == NOW
        assert window["end"] - window["start"] == datetime.timedelta(days=window["days"])

    print("  ✅ Time window setup passed")


def test_commit_identity_precedence():
    """Test the order in which committer identities are chosen."""
    print("🧪 Testing committer identity precedence...")

    commit = {
        "author": {"login": "alice"},
        "committer": {"login": "web-flow"},
        "commit": {"author": {"name": "Alice A."}, "committer": {"name": "GitHub"}},
    }
    assert commit_identity(commit) == "alice"

    commit["author"] = None
    assert commit_identity(commit) == "web-flow"

    commit["committer"] = {}
    assert commit_identity(commit) == "Alice A."

    commit["commit"]["author"] = {"name": ""}
    assert commit_identity(commit) == "GitHub"

    assert commit_identity({"sha": "abc"}) is None

    print("  ✅ Committer identity precedence passed")


def test_three_commit_window():
    """Test lines added and committers for a window with mixed stats."""
    print("🧪 Testing three-commit window...")

    listing = [
        {"sha": "c1", "author": {"login": "alice"}, "stats": {"additions": 10}},
        {
            "sha": "c2",
            "author": None,
            "committer": None,
            "commit": {"author": {"name": "Bob"}, "committer": {"name": "Bob"}},
        },
        {"sha": "c3", "author": {"login": "alice"}},
    ]
    details = {
        "c2": {"sha": "c2", "stats": {"additions": 5, "deletions": 1}},
        "c3": {"sha": "c3", "stats": {"additions": 0, "deletions": 7}},
    }
    requested = []

    def handler(request):
        path = request.url.path
        requested.append(path)
        if path == "/repos/acme/api/commits":
            assert request.url.params["per_page"] == "100"
            assert request.url.params["since"] == "2025-05-25T12:00:00Z"
            assert request.url.params["until"] == "2025-06-01T12:00:00Z"
            return httpx.Response(200, json=listing)
        return httpx.Response(200, json=details[path.rsplit("/", 1)[1]])

    window = setup_time_windows(NOW)["7days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window("7days", window, [repo("acme/api")])

    assert metrics.lines_added == 15
    assert metrics.unique_committers == 2
    assert metrics.committer_names == ["Bob", "alice"]
    assert metrics.start == window["start"]
    assert metrics.end == window["end"]
    assert metrics.processed_repositories == ["acme/api"]
    assert metrics.failed_repositories == []
    # c1 carried stats, so only c2 and c3 need detail lookups
    assert "/repos/acme/api/commits/c1" not in requested
    assert "/repos/acme/api/commits/c2" in requested

    print("  ✅ Three-commit window passed")


def test_committers_deduplicated_across_repositories():
    """Test that one person committing in two repositories counts once."""

    def handler(request):
        return httpx.Response(
            200,
            json=[{"sha": "x", "author": {"login": "carol"}, "stats": {"additions": 3}}],
        )

    window = setup_time_windows(NOW)["30days"]
    client, aggregator = make_aggregator(handler, max_workers=2)
    with client:
        metrics = aggregator.collect_window(
            "30days", window, [repo("acme/a"), repo("acme/b")]
        )

    assert metrics.lines_added == 6
    assert metrics.unique_committers == 1


def test_detail_failure_counts_zero():
    """Test that a failed commit detail lookup contributes no lines."""

    def handler(request):
        if request.url.path.endswith("/commits"):
            return httpx.Response(200, json=[{"sha": "c9", "author": {"login": "dan"}}])
        return httpx.Response(500, text="boom")

    window = setup_time_windows(NOW)["7days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window("7days", window, [repo("acme/api")])

    assert metrics.lines_added == 0
    assert metrics.committer_names == ["dan"]
    assert metrics.failed_repositories == []


def test_empty_repository_message_counts_zero():
    """Test that an 'empty repository' message is treated as no commits."""
    print("🧪 Testing empty repository answers...")

    def handler(request):
        if request.url.path == "/repos/acme/empty/commits":
            return httpx.Response(200, json={"message": "Git Repository is empty."})
        if request.url.path == "/repos/acme/empty409/commits":
            return httpx.Response(409, json={"message": "Git Repository is empty."})
        return httpx.Response(
            200, json=[{"sha": "c1", "author": {"login": "erin"}, "stats": {"additions": 4}}]
        )

    window = setup_time_windows(NOW)["90days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window(
            "90days", window, [repo("acme/empty"), repo("acme/empty409"), repo("acme/full")]
        )

    assert metrics.lines_added == 4
    assert metrics.unique_committers == 1
    assert metrics.failed_repositories == []

    print("  ✅ Empty repository answers passed")


def test_unexpected_payload_marks_repository_failed():
    """Test that a non-list answer without an empty marker fails that repository only."""
    print("🧪 Testing malformed commit listing...")

    def handler(request):
        if request.url.path == "/repos/acme/odd/commits":
            return httpx.Response(200, json={"message": "API rate limit exceeded"})
        return httpx.Response(
            200, json=[{"sha": "c1", "author": {"login": "finn"}, "stats": {"additions": 2}}]
        )

    window = setup_time_windows(NOW)["7days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window("7days", window, [repo("acme/odd"), repo("acme/ok")])

    assert metrics.failed_repositories == ["acme/odd"]
    assert metrics.processed_repositories == ["acme/odd", "acme/ok"]
    assert metrics.lines_added == 2

    print("  ✅ Malformed commit listing passed")


def test_http_error_marks_repository_failed():
    """Test that a server error on the listing marks the repository failed."""

    def handler(request):
        return httpx.Response(404, json={"message": "Not Found"})

    window = setup_time_windows(NOW)["7days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window("7days", window, [repo("acme/gone")])

    assert metrics.failed_repositories == ["acme/gone"]
    assert metrics.lines_added == 0
    assert metrics.unique_committers == 0


def test_paginated_commit_listing():
    """Test that every page of commits contributes to the window."""

    def handler(request):
        if request.url.params.get("page") == "2":
            return httpx.Response(
                200, json=[{"sha": "b", "author": {"login": "gus"}, "stats": {"additions": 1}}]
            )
        return httpx.Response(
            200,
            json=[{"sha": "a", "author": {"login": "hana"}, "stats": {"additions": 1}}],
            headers={
                "Link": '<https://api.github.com/repos/acme/api/commits?page=2>; rel="next"'
            },
        )

    window = setup_time_windows(NOW)["365days"]
    client, aggregator = make_aggregator(handler)
    with client:
        metrics = aggregator.collect_window("365days", window, [repo("acme/api")])

    assert metrics.lines_added == 2
    assert metrics.committer_names == ["gus", "hana"]


def test_malformed_commit_shapes_do_not_abort_window():
    """Test that string-valued author and commit fields are tolerated."""
    print("🧪 Testing malformed commit shapes...")

    def handler(request):
        path = request.url.path
        if path == "/repos/acme/odd/commits":
            return httpx.Response(
                200,
                json=[
                    {"sha": "o1", "author": "alice", "committer": 7, "commit": "x",
                     "stats": {"additions": 4}},
                    {"sha": "o2", "author": {"login": "ivy"}, "stats": "many"},
                ],
            )
        if path == "/repos/acme/odd/commits/o2":
            return httpx.Response(200, json={"sha": "o2", "stats": {"additions": 6}})
        return httpx.Response(
            200, json=[{"sha": "c1", "author": {"login": "finn"}, "stats": {"additions": 2}}]
        )

    window = setup_time_windows(NOW)["30days"]
    client, aggregator = make_aggregator(handler, max_workers=4)
    with client:
        metrics = aggregator.collect_window("30days", window, [repo("acme/odd"), repo("acme/ok")])

    assert metrics.failed_repositories == []
    assert metrics.lines_added == 12
    assert metrics.committer_names == ["finn", "ivy"]

    print("  ✅ Malformed commit shapes passed")


def test_unexpected_exception_marks_only_that_repository_failed():
    """Test that an exception escaping one repository leaves the window intact."""

    def handler(request):
        return httpx.Response(
            200, json=[{"sha": "c1", "author": {"login": "finn"}, "stats": {"additions": 3}}]
        )

    window = setup_time_windows(NOW)["7days"]
    client, aggregator = make_aggregator(handler, max_workers=4)
    original = aggregator.collect_repository

    def flaky(repository, period_key, window):
        if repository.full_name == "acme/bad":
            raise AttributeError("'str' object has no attribute 'get'")
        return original(repository, period_key, window)

    aggregator.collect_repository = flaky
    with client:
        metrics = aggregator.collect_window(
            "7days", window, [repo("acme/bad"), repo("acme/ok"), repo("acme/also")]
        )

    assert metrics.failed_repositories == ["acme/bad"]
    assert metrics.processed_repositories == ["acme/bad", "acme/ok", "acme/also"]
    assert metrics.lines_added == 6


def run_all_tests():
    """Run all window aggregation tests."""
    print("🚀 Starting Window Aggregation Tests")
    print("=" * 60)

    tests = [
        test_setup_time_windows,
        test_commit_identity_precedence,
        test_three_commit_window,
        test_committers_deduplicated_across_repositories,
        test_detail_failure_counts_zero,
        test_empty_repository_message_counts_zero,
        test_unexpected_payload_marks_repository_failed,
        test_http_error_marks_repository_failed,
        test_paginated_commit_listing,
        test_malformed_commit_shapes_do_not_abort_window,
        test_unexpected_exception_marks_only_that_repository_failed,
    ]

    passed = 0
    failed = 0

    for test_func in tests:
        try:
            test_func()
            passed += 1
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1
            import traceback
            traceback.print_exc()

    print("=" * 60)
    print(f"📊 Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
