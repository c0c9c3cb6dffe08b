#!/usr/bin/env python3
"""
dupmatch - Find files in a slave tree that duplicate files in a master tree.

Uses a two-phase approach:
1. Bucket both trees by file size and pair master/slave files of equal size
2. Within each candidate pair: hash the entire file (MD5) and compare digests
3. Report verified matches, plus any pair that could not be verified

Each file's size and digest are computed at most once per run.
"""

import argparse
import fnmatch
import hashlib
import json
import logging
import os
import stat
import sys
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

logger = logging.getLogger("dupmatch")

# Read size for streaming digests (64KB)
HASH_CHUNK_SIZE = 64 * 1024

# Filesystem metadata sidecars, skipped regardless of the filter
SENTINEL_NAMES = frozenset({".DS_Store", "Thumbs.db", "desktop.ini"})

SIZE_UNITS = ("KB", "MB", "GB", "TB", "PB", "EB")

SUBTREE_UNAVAILABLE = "SUBTREE_UNAVAILABLE"
METADATA_UNAVAILABLE = "METADATA_UNAVAILABLE"
CONTENT_UNREADABLE = "CONTENT_UNREADABLE"


class DupmatchError(Exception):
    """A per-file or per-directory failure; never fatal to a run."""

    def __init__(self, message: str, code: str, path: str) -> None:
        super().__init__(message)
        self.code = code
        self.path = path


class MetadataUnavailable(DupmatchError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot stat '{path}': {reason}", METADATA_UNAVAILABLE, path)


class ContentUnreadable(DupmatchError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot read '{path}': {reason}", CONTENT_UNREADABLE, path)


class SubtreeUnavailable(DupmatchError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot open directory '{path}': {reason}", SUBTREE_UNAVAILABLE, path)


@dataclass(frozen=True)
class ScanIssue:
    path: str
    code: str
    message: str

    @classmethod
    def from_error(cls, error: DupmatchError) -> "ScanIssue":
        return cls(path=error.path, code=error.code, message=str(error))


def _record(issues: list[ScanIssue] | None, error: DupmatchError) -> None:
    logger.warning("%s", error)
    if issues is not None:
        issues.append(ScanIssue.from_error(error))


def file_size(path: str) -> int:
    """Return the length of path in bytes."""
    try:
        return os.stat(path).st_size
    except OSError as e:
        raise MetadataUnavailable(path, e.strerror or str(e)) from e


def content_digest(path: str) -> bytes:
    """MD5 the entire file in chunks. Returns the 16 raw digest bytes."""
    h = hashlib.md5(usedforsecurity=False)
    try:
        with open(path, "rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                h.update(chunk)
    except OSError as e:
        raise ContentUnreadable(path, e.strerror or str(e)) from e
    return h.digest()


class Entry:
    """A regular file with lazily computed, write-once size and digest.

    The cached values are never invalidated: a run assumes the files do not
    change underneath it. Failed lookups are not cached and raise every time.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._size: int | None = None
        self._digest: bytes | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_size_cached(self) -> bool:
        return self._size is not None

    @property
    def is_digest_cached(self) -> bool:
        return self._digest is not None

    def get_size(self) -> int:
        if self._size is None:
            with self._lock:
                if self._size is None:
                    self._size = file_size(self._path)
        return self._size

    def get_digest(self) -> bytes:
        if self._digest is None:
            with self._lock:
                if self._digest is None:
                    self._digest = content_digest(self._path)
        return self._digest

    def hexdigest(self) -> str:
        return self.get_digest().hex()

    def __repr__(self) -> str:
        return f"Entry({self._path!r})"


def accept_all(name: str) -> bool:
    """Default filename filter: keep every file."""
    return True


@dataclass(frozen=True)
class ScanConfig:
    """Where and how to enumerate one side of the comparison."""

    root: str
    recursive: bool = True
    verbose: bool = False
    filter: Callable[[str], bool] = accept_all


def enumerate_directory(
    config: ScanConfig,
    issues: list[ScanIssue] | None = None,
) -> list[Entry]:
    """Collect an Entry for each regular file under config.root.

    Directories that cannot be opened are reported and skipped; they never
    abort the walk.
    """
    entries: list[Entry] = []

    def on_error(e: OSError) -> None:
        _record(issues, SubtreeUnavailable(e.filename or config.root, e.strerror or str(e)))

    for dirpath, dirnames, filenames in os.walk(config.root, topdown=True, onerror=on_error):
        if config.verbose:
            logger.info("scanning folder %s", dirpath)

        if config.recursive:
            dirnames.sort()
        else:
            dirnames.clear()

        for name in sorted(filenames):
            if name in SENTINEL_NAMES or not config.filter(name):
                continue
            path = os.path.join(dirpath, name)
            try:
                mode = os.lstat(path).st_mode
            except OSError:
                continue  # Vanished between listing and lstat
            if stat.S_ISREG(mode):
                entries.append(Entry(path))

    return entries


@dataclass(frozen=True)
class CandidateMatch:
    master: Entry
    slave: Entry


@dataclass(frozen=True)
class VerifiedMatch:
    master: Entry
    slave: Entry
    digest: bytes

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()


@dataclass(frozen=True)
class UnverifiableMatch:
    master: Entry
    slave: Entry
    path: str
    reason: str


@dataclass(frozen=True)
class CollectionSummary:
    files: int = 0
    total_bytes: int = 0
    unavailable: int = 0


def bucket_by_size(
    entries: Iterable[Entry],
    issues: list[ScanIssue] | None = None,
) -> dict[int, list[Entry]]:
    """Group entries by size. Entries that cannot be stat'ed are left out."""
    buckets: dict[int, list[Entry]] = defaultdict(list)
    for entry in entries:
        try:
            size = entry.get_size()
        except MetadataUnavailable as e:
            _record(issues, e)
            continue
        buckets[size].append(entry)
    return dict(buckets)


def summarize(entries: list[Entry], buckets: dict[int, list[Entry]]) -> CollectionSummary:
    """Count files and bytes of one collection from its size buckets."""
    sized = sum(len(group) for group in buckets.values())
    return CollectionSummary(
        files=len(entries),
        total_bytes=sum(size * len(group) for size, group in buckets.items()),
        unavailable=len(entries) - sized,
    )


def pair_buckets(
    master_buckets: dict[int, list[Entry]],
    slave_buckets: dict[int, list[Entry]],
) -> list[CandidateMatch]:
    """Pair master and slave entries that share a size bucket."""
    candidates: list[CandidateMatch] = []
    for size, masters in master_buckets.items():
        slaves = slave_buckets.get(size)
        if not slaves:
            continue
        for m in masters:
            for s in slaves:
                candidates.append(CandidateMatch(m, s))
    return candidates


def find_candidates(
    master: Iterable[Entry],
    slave: Iterable[Entry],
    issues: list[ScanIssue] | None = None,
) -> list[CandidateMatch]:
    """Pair every master entry with every slave entry of the same size."""
    return pair_buckets(bucket_by_size(master, issues), bucket_by_size(slave, issues))


def verify_match(match: CandidateMatch) -> bool:
    """True if both sides have identical content. Raises ContentUnreadable."""
    return match.master.get_digest() == match.slave.get_digest()


@dataclass
class MatchReport:
    candidates: int = 0
    verified: list[VerifiedMatch] = field(default_factory=list)
    distinct: int = 0
    unverifiable: list[UnverifiableMatch] = field(default_factory=list)


def _warm_digests(entries: list[Entry], jobs: int) -> dict[str, ContentUnreadable]:
    """Compute every digest once, returning the failures keyed by path."""
    failures: dict[str, ContentUnreadable] = {}
    if jobs > 1:
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            futures = {executor.submit(e.get_digest): e for e in entries}
            for future in as_completed(futures):
                try:
                    future.result()
                except ContentUnreadable as e:
                    failures[futures[future].path] = e
    else:
        for entry in entries:
            try:
                entry.get_digest()
            except ContentUnreadable as e:
                failures[entry.path] = e
    return failures


def verify_matches(
    candidates: list[CandidateMatch],
    jobs: int = 1,
    issues: list[ScanIssue] | None = None,
) -> MatchReport:
    """Split candidates into verified, distinct and unverifiable."""
    unique: dict[int, Entry] = {}
    for match in candidates:
        unique.setdefault(id(match.master), match.master)
        unique.setdefault(id(match.slave), match.slave)

    failures = _warm_digests(list(unique.values()), max(1, jobs))
    for path in sorted(failures):
        _record(issues, failures[path])

    report = MatchReport(candidates=len(candidates))
    for match in candidates:
        failed = failures.get(match.master.path) or failures.get(match.slave.path)
        if failed is not None:
            report.unverifiable.append(
                UnverifiableMatch(match.master, match.slave, failed.path, str(failed))
            )
        elif verify_match(match):
            report.verified.append(
                VerifiedMatch(match.master, match.slave, match.master.get_digest())
            )
        else:
            report.distinct += 1
    return report


@dataclass
class ComparisonResult:
    master: CollectionSummary
    slave: CollectionSummary
    candidates: int = 0
    verified: list[VerifiedMatch] = field(default_factory=list)
    distinct: int = 0
    unverifiable: list[UnverifiableMatch] = field(default_factory=list)
    issues: list[ScanIssue] = field(default_factory=list)


def compare_trees(
    master_config: ScanConfig,
    slave_config: ScanConfig,
    jobs: int = 1,
) -> ComparisonResult:
    """Find slave files whose content duplicates a master file."""
    issues: list[ScanIssue] = []

    master_entries = enumerate_directory(master_config, issues)
    slave_entries = enumerate_directory(slave_config, issues)

    # Phase 1: size buckets, cross-collection pairs only
    master_buckets = bucket_by_size(master_entries, issues)
    slave_buckets = bucket_by_size(slave_entries, issues)
    candidates = pair_buckets(master_buckets, slave_buckets)
    logger.info("found %d potential matches", len(candidates))

    # Phase 2: full content digests
    report = verify_matches(candidates, jobs=jobs, issues=issues)

    return ComparisonResult(
        master=summarize(master_entries, master_buckets),
        slave=summarize(slave_entries, slave_buckets),
        candidates=report.candidates,
        verified=report.verified,
        distinct=report.distinct,
        unverifiable=report.unverifiable,
        issues=issues,
    )


def format_size(n: int) -> str:
    """Format bytes as human-readable string (1024-based)."""
    if n < 1024:
        return f"{n} B"
    value = float(n)
    for unit in SIZE_UNITS:
        value /= 1024
        # Step up when rounding would print 1024.0
        if round(value, 1) < 1024 or unit == SIZE_UNITS[-1]:
            return f"{value:.1f} {unit}"
    return f"{value:.1f} {SIZE_UNITS[-1]}"


def _display_path(path: str) -> str:
    """Render a path for stdout, escaping bytes the terminal cannot encode."""
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    return os.fsencode(path).decode(encoding, "backslashreplace")


def _matches_any(name: str, patterns: list[str]) -> bool:
    """Return True if name matches any fnmatch pattern."""
    return any(fnmatch.fnmatch(name, p) for p in patterns)


def _load_exclude_file(filepath: str) -> list[str]:
    """Load exclude patterns from file (one per line, # for comments)."""
    patterns = []
    try:
        with open(filepath) as f:
            for line in f:
                line = line.split("#", 1)[0].strip()
                if line:
                    patterns.append(line)
    except OSError as e:
        logger.warning("Cannot read exclude file '%s': %s", filepath, e)
    return patterns


def exclude_filter(patterns: list[str]) -> Callable[[str], bool]:
    """Build a filename filter that rejects names matching any pattern."""
    if not patterns:
        return accept_all
    return lambda name: not _matches_any(name, patterns)


def to_json(result: ComparisonResult) -> dict:
    """Convert a comparison result into a JSON-serializable dict."""

    def summary(s: CollectionSummary) -> dict:
        return {"files": s.files, "total_bytes": s.total_bytes, "unavailable": s.unavailable}

    return {
        "master": summary(result.master),
        "slave": summary(result.slave),
        "potential_matches": result.candidates,
        "distinct": result.distinct,
        "verified_matches": [
            {"master": m.master.path, "slave": m.slave.path, "digest": m.hexdigest}
            for m in result.verified
        ],
        "unverifiable_matches": [
            {"master": u.master.path, "slave": u.slave.path, "path": u.path, "reason": u.reason}
            for u in result.unverifiable
        ],
        "issues": [
            {"path": i.path, "code": i.code, "message": i.message} for i in result.issues
        ],
    }


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Find files in SLAVE that duplicate the content of files in MASTER.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("master", help="Directory holding the reference copies")
    parser.add_argument("slave", help="Directory checked against MASTER")
    parser.add_argument(
        "-x",
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Exclude files whose name matches pattern (shell-style: *, ?, []; can be specified multiple times)",
    )
    parser.add_argument(
        "--exclude-from",
        metavar="FILE",
        help="Read exclude patterns from file (one per line, # for comments)",
    )
    parser.add_argument(
        "--no-recurse",
        action="store_true",
        help="Do not recurse into subdirectories",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        metavar="N",
        help="Number of parallel hashing jobs (default: 1)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Report each folder as it is scanned",
    )
    parser.add_argument(
        "-f",
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format: text or json (default: text)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    for root in (args.master, args.slave):
        if not os.path.isdir(root):
            print(f"Error: '{_display_path(root)}' is not a directory", file=sys.stderr)
            sys.exit(1)

    exclude_patterns = list(args.exclude)
    if args.exclude_from:
        exclude_patterns.extend(_load_exclude_file(args.exclude_from))
    name_filter = exclude_filter(exclude_patterns)

    configs = [
        ScanConfig(
            root=root,
            recursive=not args.no_recurse,
            verbose=args.verbose,
            filter=name_filter,
        )
        for root in (args.master, args.slave)
    ]
    result = compare_trees(configs[0], configs[1], jobs=max(1, args.jobs))

    if args.format == "json":
        print(json.dumps(to_json(result), indent=2))
    else:
        for label, s in (("master", result.master), ("slave", result.slave)):
            print(f"{label}: {s.files} files, total size: {format_size(s.total_bytes)}")
        print(f"found {result.candidates} potential matches")
        print(f"found {len(result.verified)} verified matches")
        for m in result.verified:
            print(f"{m.hexdigest}  {_display_path(m.master.path)}  {_display_path(m.slave.path)}")
        if result.unverifiable:
            print(f"could not verify {len(result.unverifiable)} potential matches")

    if result.issues:
        sys.exit(2)


if __name__ == "__main__":
    main()
