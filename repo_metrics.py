#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Repository Metrics Aggregation Pipeline - Team-Wide Source Control Activity

This script collects, aggregates and persists source-control activity metrics
for the repositories a team has selected:
- Repository discovery against the GitHub (or GitHub Enterprise) REST API
- Instantaneous snapshot: language byte histogram, estimated lines, latest tags
- Rolling windows (7/30/60/90/180/365 days): lines added, unique committers
- Cloned line counts: shallow clone + file walk for ground-truth LOC

Architecture:
- Single script with modular internal structure
- Configuration-driven with template + team overrides (YAML)
- One explicitly constructed httpx client per refresh, closed on exit
- Per-repository partial results merged by a single reduction step
- Bounded thread pool per stage; a failed repository is skipped, never fatal
- Key/value metrics store holding one JSON payload per (team, period key)

Schema Version: 1.0.0
"""

import abc
import argparse
import concurrent.futures
import contextlib
import copy
import dataclasses
import datetime
import hashlib
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Sequence, Union
from urllib.parse import urlparse

try:
    import yaml  # type: ignore
except ImportError:
    print(
        "ERROR: PyYAML is required. Install with: pip install PyYAML", file=sys.stderr
    )
    sys.exit(1)

try:
    import httpx  # type: ignore
except ImportError:
    print("ERROR: httpx is required. Install with: pip install httpx", file=sys.stderr)
    sys.exit(1)

# =============================================================================
# CONSTANTS AND SCHEMA DEFINITIONS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"
DEFAULT_CONFIG_DIR = "configuration"
DEFAULT_STORE_DIR = "metrics"
LOGGER_NAME = "repo_metrics"

OVERALL_SNAPSHOT_KEY = "overall_snapshot"

# Fixed look-back windows: period key -> days
PERIOD_WINDOWS = {
    "7days": 7,
    "30days": 30,
    "60days": 60,
    "90days": 90,
    "180days": 180,
    "365days": 365,
}

PERIOD_KEYS = [OVERALL_SNAPSHOT_KEY] + list(PERIOD_WINDOWS)

ESTIMATED_BYTES_PER_LINE = 50
TAGS_PER_REPOSITORY = 5
MAX_LATEST_TAGS = 10
COMMITS_PER_PAGE = 100
LISTING_QUERY = "type=all&per_page=100"
MAX_PAGES = 1000
MAX_ERROR_BODY = 500

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 4
CLONE_TIMEOUT_SECONDS = 300
SCRATCH_DIR_PREFIX = "gh-loc-"

CODE_EXTENSIONS_FOR_LOC_COUNT = frozenset(
    [
        ".py", ".java", ".js", ".ts", ".cpp", ".c", ".h", ".html", ".css",
        ".go", ".rb", ".php", ".tsx", ".jsx", ".vue", ".svelte", ".mjs",
        ".cjs", ".cs", ".swift", ".kt", ".kts", ".rs", ".scala", ".pl",
        ".pm", ".lua", ".dart",
    ]
)

# Compared case-insensitively against directory and file names
IGNORED_NAMES_FOR_LOC_COUNT = frozenset(
    name.lower()
    for name in [
        ".git", "node_modules", "dist", "build", "target", "out", "vendor",
        "coverage", ".next", ".nuxt", ".svelte-kit", "venv", ".venv", "Pods",
        "Carthage", "obj", "bin", ".settings", ".vscode", "__pycache__",
        ".DS_Store",
    ]
)

LISTING_ENDPOINT_MARKERS = {"repos", "user", "orgs"}
EMPTY_REPOSITORY_MARKERS = ("repository is empty", "empty")

# =============================================================================
# ERROR TAXONOMY
# =============================================================================


class MetricsError(Exception):
    """Base exception for the metrics pipeline."""

    pass


class ConfigurationError(MetricsError):
    """Raised when the root reference or access credential is missing or invalid."""

    pass


class UpstreamRequestError(MetricsError):
    """Raised when the hosting API answers with a non-2xx status or is unreachable."""

    def __init__(self, url: str, status_code: Optional[int], body: str = ""):
        self.url = url
        self.status_code = status_code
        self.body = (body or "")[:MAX_ERROR_BODY]
        if status_code is None:
            message = f"Request to {url} failed: {self.body}"
        else:
            message = f"Request to {url} returned {status_code}: {self.body}"
        super().__init__(message)


class MalformedResponseError(MetricsError):
    """Raised when a response does not have the shape the caller requires."""

    def __init__(self, url: str, payload: Any):
        self.url = url
        self.payload = payload
        super().__init__(
            f"Unexpected response format from {url}: {str(payload)[:MAX_ERROR_BODY]}"
        )

    @property
    def message(self) -> Optional[str]:
        """The explanatory ``message`` field carried by the payload, if any."""
        if isinstance(self.payload, dict):
            value = self.payload.get("message")
            return value if isinstance(value, str) else None
        return None


class CloneError(MetricsError):
    """Raised when a shallow clone fails."""

    pass


class CloneTimeoutError(CloneError):
    """Raised when a shallow clone exceeds its wall-clock budget."""

    pass


class PersistenceError(MetricsError):
    """Raised when the metrics store cannot read or write a record."""

    pass


class CorruptMetricsError(PersistenceError):
    """Raised when a stored metrics document exists but cannot be decoded."""

    pass


# =============================================================================
# API STATISTICS TRACKING
# =============================================================================


class APIStatistics:
    """Track statistics for hosting API calls and clone operations."""

    def __init__(self):
        """Initialize statistics tracker."""
        self._lock = threading.Lock()
        self.stats = {
            "github": {"success": 0, "errors": {}},
            "clone": {"success": 0, "errors": {}},
        }

    def record_success(self, api_type: str) -> None:
        """Record a successful call."""
        with self._lock:
            if api_type in self.stats:
                self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: int) -> None:
        """Record an API error by status code."""
        with self._lock:
            if api_type in self.stats:
                errors = self.stats[api_type]["errors"]
                errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record a failure that has no HTTP status (transport error, timeout)."""
        with self._lock:
            if api_type in self.stats:
                errors = self.stats[api_type]["errors"]
                errors[error_type] = errors.get(error_type, 0) + 1

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of calls (success + errors)."""
        if api_type not in self.stats:
            return 0
        success = self.stats[api_type]["success"]
        errors = sum(self.stats[api_type]["errors"].values())
        return success + errors

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.stats:
            return 0
        return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any tracked operation failed."""
        return any(self.get_total_errors(api_type) > 0 for api_type in self.stats)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly copy of the counters."""
        with self._lock:
            return {
                api_type: {
                    "success": data["success"],
                    "errors": {str(code): count for code, count in data["errors"].items()},
                }
                for api_type, data in self.stats.items()
            }

    def format_console_output(self) -> str:
        """Format statistics for console output."""
        lines = []
        titles = {"github": "GitHub API", "clone": "Repository Clones"}

        for api_type, title in titles.items():
            if self.get_total_calls(api_type) == 0:
                continue
            lines.append(f"\n📊 {title} Statistics:")
            lines.append(f"   ✅ Successful calls: {self.stats[api_type]['success']}")
            total_errors = self.get_total_errors(api_type)
            if total_errors > 0:
                lines.append(f"   ❌ Failed calls: {total_errors}")
                for code, count in sorted(
                    self.stats[api_type]["errors"].items(), key=lambda x: str(x[0])
                ):
                    lines.append(f"      • Error {code}: {count}")

        return "\n".join(lines) if lines else ""


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S UTC" if include_timestamps else None,
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}")


def load_configuration(config_dir: Path, team: str) -> dict[str, Any]:
    """
    Load configuration with template + team override merge strategy.

    Args:
        config_dir: Directory containing configuration files
        team: Team identifier for the override file

    Returns:
        Merged configuration dictionary
    """
    logger = logging.getLogger(LOGGER_NAME)
    config_dir = Path(config_dir)
    template_path = config_dir / "template.config"

    # Try to find team config file case-insensitively
    team_path = None
    team_config_name = f"{team}.config"

    exact_match = config_dir / team_config_name
    if exact_match.exists():
        team_path = exact_match
        logger.debug(f"Loading team config (exact match): {team_path}")
    elif config_dir.is_dir():
        for config_file in config_dir.glob("*.config"):
            if config_file.name.lower() == team_config_name.lower():
                team_path = config_file
                logger.debug(
                    f"Loading team config (case-insensitive match): {team_path}"
                )
                break

    if not team_path:
        logger.debug(
            f"No team-specific config found for '{team}' - using template defaults only"
        )

    # Load template (required)
    if not template_path.exists():
        raise FileNotFoundError(f"Template configuration not found: {template_path}")

    template_config = load_yaml_config(template_path)

    team_config = {}
    if team_path:
        team_config = load_yaml_config(team_path)

    merged_config = deep_merge_dicts(template_config, team_config)
    merged_config["team"] = team

    return merged_config


def compute_config_digest(config: Dict[str, Any]) -> str:
    """Compute SHA256 digest of configuration, excluding the access token."""
    redacted = copy.deepcopy(config)
    github = redacted.get("github")
    if isinstance(github, dict) and "access_token" in github:
        github["access_token"] = "***"
    config_json = json.dumps(redacted, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(config_json.encode("utf-8")).hexdigest()


# =============================================================================
# TIME WINDOW COMPUTATION
# =============================================================================


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 timestamp from the API into an aware UTC datetime."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


def format_api_timestamp(value: datetime.datetime) -> str:
    """Format a datetime the way the commits endpoint expects (``YYYY-MM-DDTHH:MM:SSZ``)."""
    return value.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def setup_time_windows(
    now: Optional[datetime.datetime] = None,
) -> dict[str, dict[str, Any]]:
    """
    Compute window boundaries for every fixed look-back period.

    Returns:
        Dictionary keyed by period key with ``days``, ``start`` and ``end``
        (aware datetimes sharing one ``end``).
    """
    now = now or utc_now()
    windows = {}

    for period_key, days in PERIOD_WINDOWS.items():
        windows[period_key] = {
            "days": days,
            "start": now - datetime.timedelta(days=days),
            "end": now,
        }

    return windows


# =============================================================================
# DATA MODEL
# =============================================================================


def estimate_lines(byte_count: int) -> int:
    """Estimated line count for a byte total, rounded half up."""
    return int((byte_count / ESTIMATED_BYTES_PER_LINE) + 0.5)


@dataclass
class RepositoryRef:
    """One repository; ``full_name`` is needed for API calls, ``url`` for cloning."""

    id: str
    name: str
    url: Optional[str] = None
    full_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryRef":
        full_name = data.get("full_name") or data.get("fullName")
        name = data.get("name") or (full_name.split("/")[-1] if full_name else None)
        if not name:
            raise ValueError(f"Repository entry needs a name or full_name: {data}")
        repo_id = data.get("id")
        return cls(
            id=str(repo_id) if repo_id is not None else (full_name or name),
            name=name,
            url=data.get("url") or None,
            full_name=full_name or None,
        )

    @classmethod
    def from_api(cls, repo: dict[str, Any]) -> "RepositoryRef":
        return cls(
            id=str(repo.get("id")),
            name=repo.get("name") or "",
            url=repo.get("html_url"),
            full_name=repo.get("full_name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "full_name": self.full_name,
        }


@dataclass
class TagEntry:
    name: str
    date: datetime.datetime

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "date": self.date.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TagEntry":
        date = parse_timestamp(data.get("date"))
        if date is None:
            raise ValueError(f"Invalid tag date: {data.get('date')}")
        return cls(name=data["name"], date=date)


@dataclass
class ApiSnapshot:
    """Byte-based half of the snapshot, computed from the hosting API."""

    total_bytes: int = 0
    bytes_by_language: dict[str, int] = field(default_factory=dict)
    estimated_total_lines: int = 0
    estimated_lines_by_language: dict[str, int] = field(default_factory=dict)
    latest_tags: list[TagEntry] = field(default_factory=list)
    processed_repositories: list[str] = field(default_factory=list)
    failed_repositories: list[str] = field(default_factory=list)
    last_refreshed: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_bytes": self.total_bytes,
            "bytes_by_language": dict(self.bytes_by_language),
            "estimated_total_lines": self.estimated_total_lines,
            "estimated_lines_by_language": dict(self.estimated_lines_by_language),
            "latest_tags": [tag.to_dict() for tag in self.latest_tags],
            "processed_repositories": list(self.processed_repositories),
            "failed_repositories": list(self.failed_repositories),
            "last_refreshed": self.last_refreshed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApiSnapshot":
        return cls(
            total_bytes=int(data["total_bytes"]),
            bytes_by_language={k: int(v) for k, v in data["bytes_by_language"].items()},
            estimated_total_lines=int(data["estimated_total_lines"]),
            estimated_lines_by_language={
                k: int(v) for k, v in data["estimated_lines_by_language"].items()
            },
            latest_tags=[TagEntry.from_dict(tag) for tag in data.get("latest_tags", [])],
            processed_repositories=list(data.get("processed_repositories", [])),
            failed_repositories=list(data.get("failed_repositories", [])),
            last_refreshed=data.get("last_refreshed"),
        )


@dataclass
class ClonedLocTotals:
    """Line counts taken from shallow clones, keyed by file extension."""

    total_lines: int = 0
    lines_by_extension: dict[str, int] = field(default_factory=dict)
    processed_repositories: list[str] = field(default_factory=list)
    failed_repositories: list[str] = field(default_factory=list)
    last_refreshed: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "lines_by_extension": dict(self.lines_by_extension),
            "processed_repositories": list(self.processed_repositories),
            "failed_repositories": list(self.failed_repositories),
            "last_refreshed": self.last_refreshed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClonedLocTotals":
        return cls(
            total_lines=int(data["total_lines"]),
            lines_by_extension={k: int(v) for k, v in data["lines_by_extension"].items()},
            processed_repositories=list(data.get("processed_repositories", [])),
            failed_repositories=list(data.get("failed_repositories", [])),
            last_refreshed=data.get("last_refreshed"),
        )


@dataclass
class SnapshotMetrics:
    """
    The ``overall_snapshot`` record.

    The API estimate and the cloned count are kept side by side; they are
    computed independently and may disagree. ``notice`` carries the message of
    the most recent failed refresh, if any, while the figures stay those of
    the last successful one.
    """

    api: ApiSnapshot
    cloned: ClonedLocTotals
    notice: Optional[str] = None
    notice_at: Optional[str] = None

    kind = "snapshot"

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "api": self.api.to_dict(),
            "cloned": self.cloned.to_dict(),
            "notice": self.notice,
            "notice_at": self.notice_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SnapshotMetrics":
        return cls(
            api=ApiSnapshot.from_dict(payload["api"]),
            cloned=ClonedLocTotals.from_dict(payload["cloned"]),
            notice=payload.get("notice"),
            notice_at=payload.get("notice_at"),
        )


@dataclass
class WindowMetrics:
    """Commit activity for one look-back window."""

    period_key: str
    days: int
    lines_added: int
    committer_names: list[str]
    start: datetime.datetime
    end: datetime.datetime
    processed_repositories: list[str] = field(default_factory=list)
    failed_repositories: list[str] = field(default_factory=list)
    last_refreshed: Optional[str] = None

    kind = "window"

    @property
    def unique_committers(self) -> int:
        return len(self.committer_names)

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "period_key": self.period_key,
            "days": self.days,
            "lines_added": self.lines_added,
            "unique_committers": self.unique_committers,
            "committer_names": list(self.committer_names),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "processed_repositories": list(self.processed_repositories),
            "failed_repositories": list(self.failed_repositories),
            "last_refreshed": self.last_refreshed,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WindowMetrics":
        start = parse_timestamp(payload["start"])
        end = parse_timestamp(payload["end"])
        if start is None or end is None:
            raise ValueError("Window payload has invalid boundaries")
        return cls(
            period_key=payload["period_key"],
            days=int(payload["days"]),
            lines_added=int(payload["lines_added"]),
            committer_names=list(payload["committer_names"]),
            start=start,
            end=end,
            processed_repositories=list(payload.get("processed_repositories", [])),
            failed_repositories=list(payload.get("failed_repositories", [])),
            last_refreshed=payload.get("last_refreshed"),
        )


@dataclass
class InformationalRecord:
    """Stands in for a period whose data is unavailable."""

    message: str

    kind = "info"

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InformationalRecord":
        return cls(message=str(payload.get("message", "")))


MetricsRecord = Union[SnapshotMetrics, WindowMetrics, InformationalRecord]


def default_record(period_key: str) -> InformationalRecord:
    """Record returned for a period key that has nothing persisted."""
    if period_key == OVERALL_SNAPSHOT_KEY:
        return InformationalRecord(
            "No metrics data available. Configure GitHub settings and refresh."
        )
    return InformationalRecord(f"No data for {period_key}. Refresh metrics.")


def decode_record(period_key: str, payload: Any) -> MetricsRecord:
    """
    Decode a stored payload using the schema the period key allows.

    The snapshot key accepts ``snapshot`` or ``info`` payloads, window keys
    accept ``window`` or ``info``. Anything else becomes an informational
    record describing the problem.
    """
    if period_key == OVERALL_SNAPSHOT_KEY:
        expected = SnapshotMetrics
    elif period_key in PERIOD_WINDOWS:
        expected = WindowMetrics
    else:
        raise ValueError(f"Unknown period key: {period_key}")

    if not isinstance(payload, dict):
        return InformationalRecord(f"Unreadable metrics payload for {period_key}.")

    kind = payload.get("kind")
    if kind == InformationalRecord.kind:
        return InformationalRecord.from_payload(payload)
    if kind == expected.kind:
        try:
            return expected.from_payload(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return InformationalRecord(
                f"Unreadable metrics payload for {period_key}: {e}"
            )
    return InformationalRecord(
        f"Unreadable metrics payload for {period_key}: unexpected kind {kind!r}."
    )


# Per-repository partial results, merged after all repository work completes


@dataclass
class RepoLanguagePartial:
    full_name: str
    bytes_by_language: dict[str, int] = field(default_factory=dict)
    tags: list[TagEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class RepoCommitPartial:
    full_name: str
    lines_added: int = 0
    committers: set[str] = field(default_factory=set)
    failed: bool = False


@dataclass
class RepoLocPartial:
    full_name: str
    total_lines: int = 0
    lines_by_extension: dict[str, int] = field(default_factory=dict)
    failed: bool = False


def merge_language_partials(
    partials: Sequence[RepoLanguagePartial], refreshed_at: str
) -> ApiSnapshot:
    """Reduce per-repository language and tag results into one snapshot."""
    bytes_by_language: dict[str, int] = {}
    tags: list[TagEntry] = []
    processed: list[str] = []
    failed: list[str] = []

    for partial in partials:
        processed.append(partial.full_name)
        if partial.errors:
            failed.append(partial.full_name)
        for language, count in partial.bytes_by_language.items():
            bytes_by_language[language] = bytes_by_language.get(language, 0) + count
        tags.extend(partial.tags)

    total_bytes = sum(bytes_by_language.values())
    tags.sort(key=lambda tag: tag.date, reverse=True)

    return ApiSnapshot(
        total_bytes=total_bytes,
        bytes_by_language=bytes_by_language,
        estimated_total_lines=estimate_lines(total_bytes),
        estimated_lines_by_language={
            language: estimate_lines(count)
            for language, count in bytes_by_language.items()
        },
        latest_tags=tags[:MAX_LATEST_TAGS],
        processed_repositories=processed,
        failed_repositories=failed,
        last_refreshed=refreshed_at,
    )


def merge_commit_partials(
    period_key: str,
    window: dict[str, Any],
    partials: Sequence[RepoCommitPartial],
    refreshed_at: str,
) -> WindowMetrics:
    """Reduce per-repository commit results into one window record."""
    committers: set[str] = set()
    lines_added = 0
    processed: list[str] = []
    failed: list[str] = []

    for partial in partials:
        processed.append(partial.full_name)
        if partial.failed:
            failed.append(partial.full_name)
        lines_added += partial.lines_added
        committers.update(partial.committers)

    return WindowMetrics(
        period_key=period_key,
        days=window["days"],
        lines_added=lines_added,
        committer_names=sorted(committers),
        start=window["start"],
        end=window["end"],
        processed_repositories=processed,
        failed_repositories=failed,
        last_refreshed=refreshed_at,
    )


def merge_loc_partials(partials: Sequence[RepoLocPartial]) -> ClonedLocTotals:
    """Reduce per-repository clone counts; failed repositories contribute nothing."""
    totals = ClonedLocTotals()

    for partial in partials:
        if partial.failed:
            totals.failed_repositories.append(partial.full_name)
            continue
        totals.processed_repositories.append(partial.full_name)
        totals.total_lines += partial.total_lines
        for extension, count in partial.lines_by_extension.items():
            totals.lines_by_extension[extension] = (
                totals.lines_by_extension.get(extension, 0) + count
            )

    if totals.processed_repositories:
        totals.last_refreshed = utc_now().isoformat()
    return totals


def run_per_repository(
    func: Callable[[RepositoryRef], Any],
    repositories: Sequence[RepositoryRef],
    max_workers: int,
    on_error: Callable[[RepositoryRef, Exception], Any],
    logger: logging.Logger,
) -> list[Any]:
    """
    Apply ``func`` to every repository, results in input order.

    An exception raised for one repository is logged and replaced by
    ``on_error(repo, exc)``; it never stops the other repositories.
    """

    def failed(repo: RepositoryRef, error: Exception) -> Any:
        logger.error(
            f"Unexpected error processing {repo.full_name or repo.name}: "
            f"{type(error).__name__}: {error}"
        )
        return on_error(repo, error)

    if max_workers <= 1 or len(repositories) <= 1:
        results = []
        for repo in repositories:
            try:
                results.append(func(repo))
            except Exception as e:
                results.append(failed(repo, e))
        return results

    results = [None] * len(repositories)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index = {
            executor.submit(func, repo): index for index, repo in enumerate(repositories)
        }
        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            try:
                results[index] = future.result()
            except Exception as e:
                results[index] = failed(repositories[index], e)

    return results


# =============================================================================
# GITHUB API CLIENT AND PAGINATION
# =============================================================================


_NEXT_LINK_RE = re.compile(r"<([^>]+)>")


def parse_next_link(link_header: Optional[str]) -> Optional[str]:
    """Return the ``rel="next"`` target of a ``Link`` header, if present."""
    if not link_header:
        return None
    for entry in link_header.split(","):
        if 'rel="next"' not in entry:
            continue
        match = _NEXT_LINK_RE.search(entry)
        if match:
            return match.group(1).strip()
    return None


def resolve_api_base(root_url: str) -> str:
    """Map a configured root URL to the REST API base it belongs to."""
    parsed = urlparse(root_url or "")
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"Invalid GitHub root URL: {root_url!r}")

    host = parsed.netloc.lower()
    if host == "api.github.com":
        return f"{parsed.scheme}://{parsed.netloc}"
    if host in ("github.com", "www.github.com"):
        return "https://api.github.com"
    # GitHub Enterprise Server
    return f"{parsed.scheme}://{parsed.netloc}/api/v3"


class GitHubAPIClient:
    """Client for the GitHub REST API with cursor-following pagination."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.github.com",
        timeout: float = DEFAULT_TIMEOUT,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
        max_pages: int = MAX_PAGES,
    ):
        """Initialize GitHub API client with token."""
        self.api_base = api_base.rstrip("/")
        self.max_pages = max_pages
        self.client = httpx.Client(
            base_url=self.api_base,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": f"repo-metrics/{SCRIPT_VERSION}",
            },
            transport=transport,
        )
        self.logger = logging.getLogger(LOGGER_NAME)
        self.stats = stats or APIStatistics()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def get(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        """Issue one GET; any non-2xx answer raises ``UpstreamRequestError``."""
        try:
            response = self.client.get(url, params=params)
        except httpx.HTTPError as e:
            self.stats.record_exception("github", type(e).__name__)
            raise UpstreamRequestError(str(url), None, str(e)) from e

        if not response.is_success:
            self.stats.record_error("github", response.status_code)
            raise UpstreamRequestError(
                str(response.request.url), response.status_code, response.text
            )

        self.stats.record_success("github")
        return response

    def get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        response = self.get(url, params=params)
        try:
            return response.json()
        except ValueError:
            raise MalformedResponseError(str(response.request.url), response.text)

    def iter_pages(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        envelope_key: Optional[str] = None,
        total_key: str = "total_count",
    ) -> Iterator[list[Any]]:
        """
        Yield the items of every page of a paginated listing.

        Pages are followed through the ``rel="next"`` entry of the ``Link``
        header. When the body is an envelope (``{total_count, <envelope_key>:
        [...]}``) pagination also stops once the accumulated item count
        reaches the reported total, and falls back to ``page`` numbers when no
        link is given. An empty page always ends the fetch. A ``next`` link
        that repeats an already-fetched URL, or more than ``max_pages`` pages,
        ends the fetch with a warning.
        """
        next_url: Optional[str] = url
        next_params = dict(params) if params else None
        seen: set[str] = set()
        accumulated = 0
        page_number = 1
        pages = 0

        while next_url:
            if pages >= self.max_pages:
                self.logger.warning(
                    f"Stopping pagination of {url} after {pages} pages (page cap reached)"
                )
                return

            response = self.get(next_url, params=next_params)
            pages += 1
            fetched_url = str(response.request.url)
            seen.add(fetched_url)

            try:
                payload = response.json()
            except ValueError:
                raise MalformedResponseError(fetched_url, response.text)

            total = None
            if isinstance(payload, list):
                items = payload
            elif envelope_key and isinstance(payload, dict) and envelope_key in payload:
                items = payload.get(envelope_key)
                total = payload.get(total_key)
                if not isinstance(items, list):
                    if isinstance(total, int) and total > 0:
                        raise MalformedResponseError(fetched_url, payload)
                    items = []
            else:
                raise MalformedResponseError(fetched_url, payload)

            yield items

            if not items:
                return
            accumulated += len(items)
            if isinstance(total, int) and accumulated >= total:
                return

            link_next = parse_next_link(response.headers.get("Link"))
            if link_next:
                candidate = str(self.client.build_request("GET", link_next).url)
                if candidate in seen:
                    self.logger.warning(
                        f"Stopping pagination of {url}: next link repeats {candidate}"
                    )
                    return
                next_url, next_params = link_next, None
            elif isinstance(total, int):
                page_number += 1
                next_url = url
                next_params = dict(params or {})
                next_params["page"] = page_number
            else:
                next_url = None

    def get_all(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        envelope_key: Optional[str] = None,
    ) -> list[Any]:
        """Fetch every page of a listing and return the concatenated items."""
        items: list[Any] = []
        for page in self.iter_pages(url, params=params, envelope_key=envelope_key):
            items.extend(page)
            self.logger.debug(
                f"Fetched {len(page)} items from {url}; total so far: {len(items)}"
            )
        return items

    def get_languages(self, full_name: str) -> dict[str, int]:
        """Language byte histogram of one repository."""
        url = f"/repos/{full_name}/languages"
        data = self.get_json(url)
        if not isinstance(data, dict):
            raise MalformedResponseError(url, data)
        return data

    def get_tags(self, full_name: str, per_page: int = TAGS_PER_REPOSITORY) -> list[dict[str, Any]]:
        """First page of tags (most recent first) of one repository."""
        url = f"/repos/{full_name}/tags"
        data = self.get_json(url, params={"per_page": per_page})
        if not isinstance(data, list):
            raise MalformedResponseError(url, data)
        return data

    def get_commit(self, full_name: str, sha: str) -> dict[str, Any]:
        """Full detail (including ``stats``) of one commit."""
        url = f"/repos/{full_name}/commits/{sha}"
        data = self.get_json(url)
        if not isinstance(data, dict):
            raise MalformedResponseError(url, data)
        return data

    def iter_commits(
        self, full_name: str, since: datetime.datetime, until: datetime.datetime
    ) -> Iterator[list[dict[str, Any]]]:
        """Pages of commits made in ``[since, until]``."""
        params = {
            "since": format_api_timestamp(since),
            "until": format_api_timestamp(until),
            "per_page": COMMITS_PER_PAGE,
        }
        return self.iter_pages(f"/repos/{full_name}/commits", params=params)


# =============================================================================
# REPOSITORY DISCOVERY
# =============================================================================


def _append_query(url: str, query: str) -> str:
    return f"{url}&{query}" if "?" in url else f"{url}?{query}"


def _path_segments_after_base(root_url: str, api_base: str) -> list[str]:
    """Path segments of the root URL, excluding the API base path itself."""
    root = root_url.split("?", 1)[0].rstrip("/")
    if root.lower().startswith(api_base.lower()):
        remainder = root[len(api_base):]
    else:
        remainder = urlparse(root).path
    return [segment for segment in remainder.split("/") if segment]


def is_listing_endpoint(root_url: str, api_base: str) -> bool:
    """True when the root URL already is an API endpoint that lists repositories."""
    if not root_url.lower().startswith(api_base.lower()):
        return False
    segments = _path_segments_after_base(root_url, api_base)
    return any(segment in LISTING_ENDPOINT_MARKERS for segment in segments)


def resolve_listing_endpoint(
    client: GitHubAPIClient, root_url: str, api_base: str
) -> str:
    """
    Resolve the configured root reference to a concrete listing endpoint.

    1. An API listing URL is used as-is (with type/page-size query appended).
    2. Otherwise the last path segment names an organization or user: the
       organization endpoint is tried first; a 404/403 falls back to the user
       endpoint, any other failure is raised.
    3. A root without path segments lists the authenticated user's repositories.
    """
    logger = logging.getLogger(LOGGER_NAME)

    if is_listing_endpoint(root_url, api_base):
        return _append_query(root_url, LISTING_QUERY)

    segments = _path_segments_after_base(root_url, api_base)
    if not segments:
        return f"{api_base}/user/repos?{LISTING_QUERY}"

    owner = segments[-1]
    org_url = f"{api_base}/orgs/{owner}/repos?{LISTING_QUERY}"
    try:
        client.get(org_url)
    except UpstreamRequestError as e:
        if e.status_code in (403, 404):
            logger.info(
                f"'{owner}' is not an accessible organization ({e.status_code}); "
                "listing user repositories instead"
            )
            return f"{api_base}/users/{owner}/repos?{LISTING_QUERY}"
        raise
    return org_url


def discover_repositories(
    client: GitHubAPIClient, root_url: str
) -> tuple[str, list[RepositoryRef]]:
    """Return the listing endpoint used and every repository it lists."""
    logger = logging.getLogger(LOGGER_NAME)
    api_base = client.api_base

    endpoint = resolve_listing_endpoint(client, root_url, api_base)
    logger.info(f"Scanning GitHub repositories from: {endpoint}")

    # /installation/repositories wraps its list in a counted envelope
    items = client.get_all(endpoint, envelope_key="repositories")
    repositories = [RepositoryRef.from_api(item) for item in items if isinstance(item, dict)]

    logger.info(f"Discovered {len(repositories)} repositories")
    return endpoint, repositories


# =============================================================================
# SNAPSHOT COLLECTION (LANGUAGES AND TAGS)
# =============================================================================


class SnapshotCollector:
    """Collects the language histogram and latest tags across repositories."""

    def __init__(
        self,
        client: GitHubAPIClient,
        logger: logging.Logger,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.client = client
        self.logger = logger
        self.max_workers = max_workers

    def collect(self, repositories: Sequence[RepositoryRef]) -> ApiSnapshot:
        refreshed_at = utc_now().isoformat()
        eligible = []
        for repo in repositories:
            if not repo.full_name:
                self.logger.warning(
                    f"Skipping API metrics for {repo.name}: repository has no full name"
                )
                continue
            eligible.append(repo)

        partials = run_per_repository(
            self.collect_repository,
            eligible,
            self.max_workers,
            lambda repo, e: RepoLanguagePartial(
                full_name=repo.full_name or "", errors=[f"unexpected: {e}"]
            ),
            self.logger,
        )
        snapshot = merge_language_partials(partials, refreshed_at)
        self.logger.info(
            f"Snapshot: {snapshot.total_bytes} bytes across {len(snapshot.bytes_by_language)} "
            f"languages in {len(snapshot.processed_repositories)} repositories"
        )
        return snapshot

    def collect_repository(self, repo: RepositoryRef) -> RepoLanguagePartial:
        """Fetch language bytes and recent tags for one repository."""
        full_name = repo.full_name or ""
        partial = RepoLanguagePartial(full_name=full_name)

        try:
            languages = self.client.get_languages(full_name)
            for language, count in languages.items():
                if isinstance(count, int) and not isinstance(count, bool) and count >= 0:
                    partial.bytes_by_language[language] = count
                else:
                    self.logger.warning(
                        f"Ignoring invalid byte count {count!r} for {language} in {full_name}"
                    )
        except (UpstreamRequestError, MalformedResponseError) as e:
            self.logger.warning(f"Failed to fetch languages for {full_name}: {e}")
            partial.errors.append(f"languages: {e}")

        try:
            tags = self.client.get_tags(full_name, per_page=TAGS_PER_REPOSITORY)
        except (UpstreamRequestError, MalformedResponseError) as e:
            self.logger.warning(f"Failed to fetch tags for {full_name}: {e}")
            partial.errors.append(f"tags: {e}")
            tags = []

        for tag in tags[:TAGS_PER_REPOSITORY]:
            if not isinstance(tag, dict) or not tag.get("name"):
                continue
            partial.tags.append(
                TagEntry(name=f"{repo.name}/{tag['name']}", date=self._tag_date(full_name, tag))
            )

        return partial

    def _tag_date(self, full_name: str, tag: dict[str, Any]) -> datetime.datetime:
        """Committer date of the commit a tag points to, or now if unavailable."""
        sha = as_mapping(tag.get("commit")).get("sha")
        if sha:
            try:
                detail = self.client.get_commit(full_name, sha)
                committer = as_mapping(as_mapping(detail.get("commit")).get("committer"))
                date = parse_timestamp(committer.get("date"))
                if date is not None:
                    return date
            except (UpstreamRequestError, MalformedResponseError) as e:
                self.logger.warning(
                    f"Could not fetch commit details for tag {tag.get('name')} in {full_name}: {e}"
                )
        return utc_now()


# =============================================================================
# WINDOWED COMMIT AGGREGATION
# =============================================================================


def as_mapping(value: Any) -> dict[str, Any]:
    """``value`` if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def commit_identity(commit: dict[str, Any]) -> Optional[str]:
    """
    Committer identity of a commit listing entry.

    Tried in order: API author login, API committer login, raw author name,
    raw committer name.
    """
    raw = as_mapping(commit.get("commit"))
    candidates = (
        as_mapping(commit.get("author")).get("login"),
        as_mapping(commit.get("committer")).get("login"),
        as_mapping(raw.get("author")).get("name"),
        as_mapping(raw.get("committer")).get("name"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def is_empty_repository_message(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in EMPTY_REPOSITORY_MARKERS)


class CommitWindowAggregator:
    """Aggregates lines added and unique committers per look-back window."""

    def __init__(
        self,
        client: GitHubAPIClient,
        logger: logging.Logger,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.client = client
        self.logger = logger
        self.max_workers = max_workers

    def collect_window(
        self,
        period_key: str,
        window: dict[str, Any],
        repositories: Sequence[RepositoryRef],
    ) -> WindowMetrics:
        refreshed_at = utc_now().isoformat()
        eligible = []
        for repo in repositories:
            if not repo.full_name:
                self.logger.warning(
                    f"Skipping {period_key} commit metrics for {repo.name}: "
                    "repository has no full name"
                )
                continue
            eligible.append(repo)

        partials = run_per_repository(
            lambda repo: self.collect_repository(repo, period_key, window),
            eligible,
            self.max_workers,
            lambda repo, e: RepoCommitPartial(full_name=repo.full_name or "", failed=True),
            self.logger,
        )
        metrics = merge_commit_partials(period_key, window, partials, refreshed_at)
        self.logger.info(
            f"{period_key}: {metrics.lines_added} lines added by "
            f"{metrics.unique_committers} committers"
        )
        return metrics

    def collect_repository(
        self, repo: RepositoryRef, period_key: str, window: dict[str, Any]
    ) -> RepoCommitPartial:
        full_name = repo.full_name or ""
        partial = RepoCommitPartial(full_name=full_name)

        try:
            for page in self.client.iter_commits(full_name, window["start"], window["end"]):
                for commit in page:
                    if not isinstance(commit, dict):
                        continue
                    identity = commit_identity(commit)
                    if identity:
                        partial.committers.add(identity)
                    partial.lines_added += self._commit_additions(full_name, commit)
        except MalformedResponseError as e:
            if is_empty_repository_message(e.message):
                self.logger.info(f"No commits for {full_name} in {period_key}: {e.message}")
            else:
                self.logger.warning(
                    f"Unexpected commit listing for {full_name} ({period_key}): {e}"
                )
                partial.failed = True
        except UpstreamRequestError as e:
            # GitHub answers 409 "Git Repository is empty." for empty repositories
            if e.status_code == 409 and is_empty_repository_message(e.body):
                self.logger.info(f"No commits for {full_name} in {period_key}: repository is empty")
            else:
                self.logger.warning(
                    f"Failed to fetch commits for {full_name} ({period_key}): {e}"
                )
                partial.failed = True

        return partial

    def _commit_additions(self, full_name: str, commit: dict[str, Any]) -> int:
        """Lines added by a commit, fetching its detail when the listing has no stats."""
        stats = commit.get("stats")
        if not isinstance(stats, dict):
            sha = commit.get("sha")
            if not sha:
                return 0
            try:
                detail = self.client.get_commit(full_name, sha)
            except (UpstreamRequestError, MalformedResponseError) as e:
                self.logger.warning(
                    f"Could not fetch commit details for {full_name}#{sha}: {e}"
                )
                return 0
            stats = detail.get("stats")
            if not isinstance(stats, dict):
                return 0

        additions = stats.get("additions")
        return additions if isinstance(additions, int) and additions > 0 else 0


# =============================================================================
# CLONED LINE COUNT ANALYSIS
# =============================================================================


def build_clone_url(url: str, access_token: Optional[str]) -> str:
    """Embed the access token into an https clone URL."""
    if access_token and url.startswith("https://"):
        return url.replace("https://", f"https://x-access-token:{access_token}@", 1)
    return url


def redact_token(text: str, access_token: Optional[str]) -> str:
    if access_token and text:
        return text.replace(access_token, "***")
    return text


def safe_git_command(
    cmd: list[str],
    cwd: Path | None,
    logger: logging.Logger,
    timeout: float = CLONE_TIMEOUT_SECONDS,
) -> tuple[bool, str]:
    """
    Execute a git command with a wall-clock timeout.

    Returns:
        (success: bool, output_or_error: str)

    Raises:
        CloneTimeoutError: the command did not finish within ``timeout``

    git runs in its own process group; a timeout kills the whole group,
    transport helpers (``git-remote-https``) included.
    """
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    try:
        process = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Unable to run git in {cwd}: {e}")
        return False, str(e)

    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        kill_process_group(process, logger)
        process.communicate()
        raise CloneTimeoutError(f"Git command timed out after {timeout} seconds")

    return process.returncode == 0, (stderr or "").strip() or (stdout or "").strip()


def kill_process_group(process: subprocess.Popen, logger: logging.Logger) -> None:
    """Kill a process started with ``start_new_session`` and all its children."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Could not kill process group {process.pid}: {e}")
    process.kill()


@contextlib.contextmanager
def scratch_directory(
    logger: logging.Logger, prefix: str = SCRATCH_DIR_PREFIX
) -> Iterator[Path]:
    """A uniquely named temporary directory, removed on every exit path."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.error(f"Failed to clean up temporary directory {path}: {e}")


def is_ignored_name(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith(".") or lowered in IGNORED_NAMES_FOR_LOC_COUNT


def count_non_blank_lines(path: Path, logger: logging.Logger) -> int:
    """Non-blank lines of a text file; undecodable content counts as zero."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())
    except UnicodeDecodeError:
        logger.debug(f"Skipping undecodable file {path}")
        return 0


def _raise_walk_error(error: OSError) -> None:
    raise error


def count_lines_in_directory(
    root: Path, logger: logging.Logger
) -> tuple[int, dict[str, int]]:
    """
    Count non-blank lines of recognized source files below ``root``.

    Hidden entries and ignored build/output/dependency names are skipped.
    Returns the total and a breakdown by file extension. Read errors propagate.
    """
    total_lines = 0
    lines_by_extension: dict[str, int] = {}

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames[:] = sorted(name for name in dirnames if not is_ignored_name(name))

        for filename in sorted(filenames):
            if is_ignored_name(filename):
                continue
            extension = os.path.splitext(filename)[1].lower()
            if extension not in CODE_EXTENSIONS_FOR_LOC_COUNT:
                continue
            file_path = Path(dirpath) / filename
            # symlinks may point outside the clone
            if file_path.is_symlink() or not file_path.is_file():
                continue
            line_count = count_non_blank_lines(file_path, logger)
            total_lines += line_count
            lines_by_extension[extension] = lines_by_extension.get(extension, 0) + line_count

    return total_lines, lines_by_extension


class ClonedLocAnalyzer:
    """Shallow-clones each repository and counts its source lines."""

    def __init__(
        self,
        access_token: Optional[str],
        logger: logging.Logger,
        stats: Optional[APIStatistics] = None,
        clone_timeout: float = CLONE_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        git_executable: str = "git",
    ) -> None:
        self.access_token = access_token
        self.logger = logger
        self.stats = stats or APIStatistics()
        self.clone_timeout = clone_timeout
        self.max_workers = max_workers
        self.git_executable = git_executable

    def analyze(self, repositories: Sequence[RepositoryRef]) -> ClonedLocTotals:
        eligible = []
        for repo in repositories:
            if not repo.url or not repo.full_name:
                self.logger.warning(
                    f"Skipping cloned LOC count for {repo.name}: missing URL or full name"
                )
                continue
            eligible.append(repo)

        partials = run_per_repository(
            self.analyze_repository,
            eligible,
            self.max_workers,
            lambda repo, e: RepoLocPartial(full_name=repo.full_name or "", failed=True),
            self.logger,
        )
        totals = merge_loc_partials(partials)
        self.logger.info(
            f"Cloned LOC: {totals.total_lines} lines in "
            f"{len(totals.processed_repositories)} repositories "
            f"({len(totals.failed_repositories)} failed)"
        )
        return totals

    def analyze_repository(self, repo: RepositoryRef) -> RepoLocPartial:
        full_name = repo.full_name or ""
        partial = RepoLocPartial(full_name=full_name)
        clone_url = build_clone_url(repo.url or "", self.access_token)

        try:
            with scratch_directory(self.logger) as workdir:
                self.logger.debug(f"Cloning {full_name} into {workdir}")
                self.clone_repository(clone_url, workdir)
                total, by_extension = count_lines_in_directory(workdir, self.logger)
        except CloneTimeoutError as e:
            self.logger.warning(f"Clone of {full_name} timed out: {e}")
            partial.failed = True
        except CloneError as e:
            self.logger.warning(f"Clone of {full_name} failed: {e}")
            partial.failed = True
        except OSError as e:
            self.logger.warning(f"Could not count lines for {full_name}: {e}")
            partial.failed = True
        else:
            partial.total_lines = total
            partial.lines_by_extension = by_extension
            self.logger.debug(f"Finished LOC for {full_name}: {total} lines")

        return partial

    def clone_repository(self, clone_url: str, destination: Path) -> None:
        """Shallow clone (depth 1) into an existing empty directory."""
        cmd = [self.git_executable, "clone", "--depth", "1", "--quiet", clone_url, "."]
        try:
            success, output = safe_git_command(
                cmd, destination, self.logger, timeout=self.clone_timeout
            )
        except CloneTimeoutError:
            self.stats.record_exception("clone", "timeout")
            raise

        if not success:
            self.stats.record_exception("clone", "failed")
            raise CloneError(redact_token(output, self.access_token) or "git clone failed")
        self.stats.record_success("clone")


# =============================================================================
# METRICS STORE
# =============================================================================


class MetricsStore(abc.ABC):
    """Key/value persistence of one JSON payload per (team, period key)."""

    @abc.abstractmethod
    def put(self, team_id: str, period_key: str, payload: dict[str, Any]) -> None:
        """Store ``payload`` under (team, period key), replacing any previous value."""

    @abc.abstractmethod
    def get_all(self, team_id: str) -> dict[str, Any]:
        """Every stored payload of a team, keyed by period key."""

    @abc.abstractmethod
    def clear(self, team_id: str) -> None:
        """Remove every stored payload of a team."""


def _json_copy(payload: Any) -> Any:
    try:
        return json.loads(json.dumps(payload))
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"Payload is not JSON-serializable: {e}") from e


class InMemoryMetricsStore(MetricsStore):
    """Process-local store, mainly for tests and library callers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}

    def put(self, team_id: str, period_key: str, payload: dict[str, Any]) -> None:
        stored = _json_copy(payload)
        with self._lock:
            self._data.setdefault(team_id, {})[period_key] = stored

    def get_all(self, team_id: str) -> dict[str, Any]:
        with self._lock:
            return _json_copy(self._data.get(team_id, {}))

    def clear(self, team_id: str) -> None:
        with self._lock:
            self._data.pop(team_id, None)


class JsonFileMetricsStore(MetricsStore):
    """One JSON document per team under a store directory."""

    def __init__(self, directory: Path, logger: Optional[logging.Logger] = None) -> None:
        self.directory = Path(directory)
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._lock = threading.Lock()

    def _path(self, team_id: str) -> Path:
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", team_id)
        return self.directory / f"{safe_name}.json"

    def _load(self, team_id: str) -> dict[str, Any]:
        path = self._path(team_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            raise CorruptMetricsError(f"Unreadable metrics document {path}: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read metrics from {path}: {e}") from e

        periods = document.get("periods") if isinstance(document, dict) else None
        if not isinstance(periods, dict):
            raise CorruptMetricsError(f"Invalid metrics document structure in {path}")
        return periods

    def _quarantine(self, team_id: str, error: CorruptMetricsError) -> None:
        """Move an unreadable document aside so the team can be written again."""
        path = self._path(team_id)
        corrupt_path = path.with_name(path.name + ".corrupt")
        try:
            os.replace(path, corrupt_path)
        except OSError as e:
            raise PersistenceError(f"Failed to move aside {path}: {e}") from e
        self.logger.warning(f"{error}; moved to {corrupt_path} and starting empty")

    def _write(self, team_id: str, periods: dict[str, Any]) -> None:
        path = self._path(team_id)
        document = {
            "schema_version": SCHEMA_VERSION,
            "team_id": team_id,
            "periods": periods,
        }
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write metrics to {path}: {e}") from e

    def put(self, team_id: str, period_key: str, payload: dict[str, Any]) -> None:
        stored = _json_copy(payload)
        with self._lock:
            try:
                periods = self._load(team_id)
            except CorruptMetricsError as e:
                self._quarantine(team_id, e)
                periods = {}
            periods[period_key] = stored
            self._write(team_id, periods)

    def get_all(self, team_id: str) -> dict[str, Any]:
        with self._lock:
            return self._load(team_id)

    def clear(self, team_id: str) -> None:
        with self._lock:
            try:
                self._path(team_id).unlink(missing_ok=True)
            except OSError as e:
                raise PersistenceError(f"Failed to clear metrics for {team_id}: {e}") from e


# =============================================================================
# TEAM CONFIGURATION SOURCE
# =============================================================================


@dataclass
class TeamConfig:
    """What the pipeline needs to know about one team."""

    team_id: str
    root_url: Optional[str]
    access_token: Optional[str]
    selected_repositories: list[RepositoryRef] = field(default_factory=list)
    timeout: float = DEFAULT_TIMEOUT

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.root_url:
            missing.append("root URL")
        if not self.access_token:
            missing.append("access token")
        return missing


def team_config_from_dict(
    team_id: str, config: dict[str, Any], environ: Optional[dict[str, str]] = None
) -> TeamConfig:
    """Build a ``TeamConfig`` from a merged configuration dictionary."""
    environ = os.environ if environ is None else environ
    logger = logging.getLogger(LOGGER_NAME)
    github = config.get("github") or {}

    repositories = []
    for entry in github.get("selected_repos") or []:
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring malformed repository entry for {team_id}: {entry!r}")
            continue
        try:
            repositories.append(RepositoryRef.from_dict(entry))
        except ValueError as e:
            logger.warning(f"Ignoring repository entry for {team_id}: {e}")

    return TeamConfig(
        team_id=team_id,
        root_url=github.get("root_url") or None,
        access_token=github.get("access_token") or environ.get("GITHUB_TOKEN") or None,
        selected_repositories=repositories,
        timeout=float(github.get("timeout") or DEFAULT_TIMEOUT),
    )


class TeamConfigSource(Protocol):
    """Supplies per-team settings; read-only from the pipeline's side."""

    def get_team_config(self, team_id: str) -> Optional[TeamConfig]:
        ...


class YamlTeamConfigSource:
    """Reads team settings from ``template.config`` + ``<team>.config``."""

    def __init__(self, config_dir: Path, environ: Optional[dict[str, str]] = None) -> None:
        self.config_dir = Path(config_dir)
        self.environ = environ

    def get_team_config(self, team_id: str) -> Optional[TeamConfig]:
        try:
            config = load_configuration(self.config_dir, team_id)
        except (FileNotFoundError, ValueError) as e:
            raise ConfigurationError(str(e)) from e
        return team_config_from_dict(team_id, config, self.environ)


# =============================================================================
# MAIN ORCHESTRATION
# =============================================================================


@dataclass
class ScanResult:
    success: bool
    message: str
    repositories: list[RepositoryRef] = field(default_factory=list)
    endpoint: Optional[str] = None


@dataclass
class RefreshResult:
    success: bool
    message: str
    data: dict[str, MetricsRecord]
    stats: APIStatistics = field(default_factory=APIStatistics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": {key: record.to_payload() for key, record in self.data.items()},
            "api_statistics": self.stats.to_dict(),
        }


ClientFactory = Callable[..., GitHubAPIClient]


class RepositoryMetricsRefresher:
    """Main orchestrator for team repository metrics."""

    def __init__(
        self,
        config: dict[str, Any],
        logger: logging.Logger,
        store: MetricsStore,
        config_source: TeamConfigSource,
        client_factory: ClientFactory = GitHubAPIClient,
    ) -> None:
        self.config = config
        self.logger = logger
        self.store = store
        self.config_source = config_source
        self.client_factory = client_factory

        performance = config.get("performance", {}) or {}
        loc_config = config.get("loc", {}) or {}
        self.max_workers = int(performance.get("max_workers", DEFAULT_MAX_WORKERS))
        self.loc_enabled = bool(loc_config.get("enabled", True))
        self.clone_timeout = float(loc_config.get("clone_timeout", CLONE_TIMEOUT_SECONDS))

    def _load_team_config(self, team_id: str) -> TeamConfig:
        team_config = self.config_source.get_team_config(team_id)
        if team_config is None:
            raise ConfigurationError(
                "GitHub configuration (Root URL or Access Token) not found for this team."
            )
        missing = team_config.missing_fields()
        if missing:
            raise ConfigurationError(
                "GitHub configuration not fully configured for this team: missing "
                + " and ".join(missing)
                + "."
            )
        return team_config

    def _open_client(self, team_config: TeamConfig, stats: APIStatistics) -> GitHubAPIClient:
        return self.client_factory(
            token=team_config.access_token,
            api_base=resolve_api_base(team_config.root_url or ""),
            timeout=team_config.timeout,
            stats=stats,
        )

    def scan_repositories(self, team_id: str) -> ScanResult:
        """Discover every repository reachable from the team's root reference."""
        stats = APIStatistics()
        try:
            team_config = self._load_team_config(team_id)
            with self._open_client(team_config, stats) as client:
                endpoint, repositories = discover_repositories(
                    client, team_config.root_url or ""
                )
        except ConfigurationError as e:
            self.logger.warning(f"Cannot scan repositories for {team_id}: {e}")
            return ScanResult(False, str(e))
        except (UpstreamRequestError, MalformedResponseError) as e:
            self.logger.error(f"Repository scan failed for {team_id}: {e}")
            return ScanResult(False, str(e))

        if not repositories:
            return ScanResult(
                True,
                f"No repositories found for the configured URL: {endpoint}. This could be "
                "due to permissions, an incorrect URL, or no repositories present.",
                [],
                endpoint,
            )
        return ScanResult(
            True, f"Found {len(repositories)} repositories.", repositories, endpoint
        )

    def get_metrics(self, team_id: str) -> dict[str, MetricsRecord]:
        """
        Consolidated read-back: every period key resolves to a record.

        An unreadable store yields informational records instead of raising.
        """
        try:
            stored = self.store.get_all(team_id)
        except PersistenceError as e:
            self.logger.warning(f"Stored metrics for team {team_id} are unreadable: {e}")
            message = f"Stored metrics are unreadable ({e}). Refresh metrics."
            return {period_key: InformationalRecord(message) for period_key in PERIOD_KEYS}
        metrics: dict[str, MetricsRecord] = {}
        for period_key in PERIOD_KEYS:
            if period_key in stored:
                metrics[period_key] = decode_record(period_key, stored[period_key])
            else:
                metrics[period_key] = default_record(period_key)
        return metrics

    def refresh(
        self,
        team_id: str,
        repositories: Optional[Sequence[Union[RepositoryRef, dict[str, Any]]]] = None,
    ) -> RefreshResult:
        """
        Refresh every period key for a team.

        Repositories come from the explicit argument, else the team's saved
        selection. Failures are reported through the result and recorded on
        the ``overall_snapshot`` record; only ``PersistenceError`` is raised,
        after a best-effort attempt to record it.
        """
        stats = APIStatistics()

        try:
            team_config = self._load_team_config(team_id)
            api_base = resolve_api_base(team_config.root_url or "")

            if repositories:
                selected = [
                    repo if isinstance(repo, RepositoryRef) else RepositoryRef.from_dict(repo)
                    for repo in repositories
                ]
            else:
                selected = list(team_config.selected_repositories)

            if not selected:
                message = (
                    "No repositories selected or configured for this team. "
                    "GitHub metrics cleared."
                )
                self.logger.info(message)
                self.store.clear(team_id)
                self.store.put(
                    team_id, OVERALL_SNAPSHOT_KEY, InformationalRecord(message).to_payload()
                )
                return RefreshResult(True, message, self.get_metrics(team_id), stats)

            self.logger.info(
                f"Refreshing GitHub metrics for {len(selected)} repositories "
                f"(team {team_id}, API base {api_base})"
            )

            with self._open_client(team_config, stats) as client:
                self._refresh_snapshot(team_id, team_config, client, selected, stats)
                self._refresh_windows(team_id, client, selected)

            message = "GitHub metrics (API & cloned LOC) refreshed and saved."
            self.logger.info(f"Successfully refreshed GitHub metrics for team {team_id}")
            return RefreshResult(True, message, self.get_metrics(team_id), stats)

        except ConfigurationError as e:
            message = str(e)
            self.logger.warning(message)
            data = self._record_failure(team_id, message)
            return RefreshResult(False, message, data, stats)
        except PersistenceError as e:
            self.logger.error(f"Metrics store failure for team {team_id}: {e}")
            self._record_failure(team_id, f"Refresh failed: {e}")
            raise
        except Exception as e:
            self.logger.exception(f"Critical error refreshing GitHub metrics for {team_id}")
            message = str(e) or "An unexpected error occurred while refreshing GitHub metrics."
            data = self._record_failure(team_id, f"Refresh failed: {message}")
            return RefreshResult(False, message, data, stats)

    def _refresh_snapshot(
        self,
        team_id: str,
        team_config: TeamConfig,
        client: GitHubAPIClient,
        repositories: Sequence[RepositoryRef],
        stats: APIStatistics,
    ) -> None:
        api_snapshot = SnapshotCollector(client, self.logger, self.max_workers).collect(
            repositories
        )

        if self.loc_enabled:
            analyzer = ClonedLocAnalyzer(
                team_config.access_token,
                self.logger,
                stats=stats,
                clone_timeout=self.clone_timeout,
                max_workers=self.max_workers,
            )
            cloned = analyzer.analyze(repositories)
        else:
            self.logger.info("Cloned LOC analysis disabled by configuration")
            cloned = ClonedLocTotals()

        snapshot = SnapshotMetrics(api=api_snapshot, cloned=cloned)
        self.store.put(team_id, OVERALL_SNAPSHOT_KEY, snapshot.to_payload())

    def _refresh_windows(
        self,
        team_id: str,
        client: GitHubAPIClient,
        repositories: Sequence[RepositoryRef],
    ) -> None:
        aggregator = CommitWindowAggregator(client, self.logger, self.max_workers)
        for period_key, window in setup_time_windows().items():
            metrics = aggregator.collect_window(period_key, window, repositories)
            self.store.put(team_id, period_key, metrics.to_payload())

    def _record_failure(self, team_id: str, message: str) -> dict[str, MetricsRecord]:
        """
        Attach a failure message to the snapshot record without losing data.

        An existing snapshot keeps its figures and gains a notice; otherwise an
        informational record is written. Window records are left untouched.
        """
        existing = self.get_metrics(team_id)
        current = existing.get(OVERALL_SNAPSHOT_KEY)
        record: MetricsRecord
        if isinstance(current, SnapshotMetrics):
            record = dataclasses.replace(
                current, notice=message, notice_at=utc_now().isoformat()
            )
        else:
            record = InformationalRecord(message)

        try:
            self.store.put(team_id, OVERALL_SNAPSHOT_KEY, record.to_payload())
        except PersistenceError as e:
            self.logger.error(f"Failed to save error info for team {team_id}: {e}")

        data = dict(existing)
        data[OVERALL_SNAPSHOT_KEY] = record
        return data


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def repository_from_full_name(full_name: str, root_url: Optional[str]) -> RepositoryRef:
    """RepositoryRef for an ``owner/name`` given on the command line."""
    owner_name = full_name.strip().strip("/")
    if owner_name.count("/") != 1:
        raise ValueError(f"Expected owner/name, got: {full_name!r}")

    web_base = "https://github.com"
    if root_url:
        parsed = urlparse(root_url)
        host = parsed.netloc.lower()
        if parsed.scheme and host and host not in ("api.github.com", "github.com", "www.github.com"):
            web_base = f"{parsed.scheme}://{parsed.netloc}"

    return RepositoryRef(
        id=owner_name,
        name=owner_name.split("/")[1],
        url=f"{web_base}/{owner_name}",
        full_name=owner_name,
    )


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Collect and persist GitHub repository metrics for a team",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --team platform
  %(prog)s --team platform --scan
  %(prog)s --team platform --repo acme/api --repo acme/web --output metrics.json
        """,
    )

    parser.add_argument(
        "--team",
        required=True,
        help="Team identifier (used for config override and metrics storage)",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help=f"Configuration directory (default: {DEFAULT_CONFIG_DIR})",
    )
    parser.add_argument(
        "--store-dir",
        type=Path,
        default=DEFAULT_STORE_DIR,
        help=f"Metrics store directory (default: {DEFAULT_STORE_DIR})",
    )
    parser.add_argument(
        "--repo",
        action="append",
        default=[],
        metavar="OWNER/NAME",
        help="Refresh only these repositories (repeatable)",
    )
    parser.add_argument(
        "--scan",
        action="store_true",
        help="List the repositories reachable from the root URL and exit",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write the consolidated metrics JSON to this file",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration",
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    try:
        args = parse_arguments(argv)

        try:
            config = load_configuration(args.config_dir, args.team)
        except Exception as e:
            print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
            return 1

        if args.log_level:
            config.setdefault("logging", {})["level"] = args.log_level
        elif args.verbose:
            config.setdefault("logging", {})["level"] = "DEBUG"

        log_config = config.get("logging", {}) or {}
        logger = setup_logging(
            level=log_config.get("level", "INFO"),
            include_timestamps=log_config.get("include_timestamps", True),
        )

        logger.info(f"Repository Metrics v{SCRIPT_VERSION}")
        logger.info(f"Team: {args.team}")
        logger.info(f"Configuration digest: {compute_config_digest(config)[:12]}...")

        config_source = YamlTeamConfigSource(args.config_dir)
        refresher = RepositoryMetricsRefresher(
            config, logger, JsonFileMetricsStore(args.store_dir), config_source
        )

        if args.scan:
            scan = refresher.scan_repositories(args.team)
            print(f"{'✅' if scan.success else '❌'} {scan.message}")
            for repo in scan.repositories:
                print(f"   - {repo.full_name} ({repo.url})")
            return 0 if scan.success else 1

        explicit = None
        if args.repo:
            root_url = (config.get("github") or {}).get("root_url")
            explicit = [repository_from_full_name(name, root_url) for name in args.repo]

        result = refresher.refresh(args.team, explicit)

        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
            logger.info(f"Metrics written to {args.output}")

        if result.success:
            print(f"\n✅ {result.message}")
        else:
            print(f"\n❌ {result.message}", file=sys.stderr)

        api_stats_output = result.stats.format_console_output()
        if api_stats_output:
            print(api_stats_output)

        return 0 if result.success else 1

    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
