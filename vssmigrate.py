#!/usr/bin/env python3
"""
VSS History Migrator - Commit Reconstruction (v1.0.0)

Rebuilds linear, multi-file commit history from the per-file revision
history of a Visual SourceSafe database, ready to be replayed into git.

Pipeline stages and their artifacts:
- Stage 2: Raw version list (2-raw-versions-list.txt)
- Stage 3: Label list (3-labels-list.txt)
- Stage 5: Commit list + audit log (5-commits-list.txt, 5-commits-log.txt)
- Stage 6: Import into git (6-import.txt, see vss_replay.py)

Every artifact stores strings, never interned ids, so a stage can always be
rerun from the files left behind by the previous one.
"""

import json
import os
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"

# Artifact names (relative to the work directory)
RAW_VERSIONS_FILE = "2-raw-versions-list.txt"
RAW_VERSIONS_LOG_FILE = "log-2-raw-versions-list.txt"
LABELS_FILE = "3-labels-list.txt"
COMMITS_FILE = "5-commits-list.txt"
COMMITS_LOG_FILE = "5-commits-log.txt"
ERRORS_FILE = "log-errors.txt"

# Comment newlines are stored as this control character
COMMENT_NEWLINE_SENTINEL = "\x01"


# ============================================================================
# ERRORS
# ============================================================================


class MigrationError(Exception):
    """Base class for all migration failures"""


class CommitParseError(MigrationError, ValueError):
    """A persisted record could not be parsed. Aborts the whole load."""


class DuplicateLabelError(MigrationError):
    """The same label was proposed twice for one commit"""


class AuthorMappingError(MigrationError, ValueError):
    """Broken author mapping file"""


class UnmappedAuthorsError(MigrationError):
    """Raised in strict mode when some legacy users have no mapping"""

    def __init__(self, unmapped: Set[str]):
        self.unmapped = set(unmapped)
        super().__init__(
            f"{len(self.unmapped)} legacy user(s) not mapped to an author. Stop execution."
        )


class StopRequested(MigrationError):
    """Cooperative cancellation. The stage can be rerun from scratch later."""


class RevisionSourceError(MigrationError):
    """
    Per-file failure reported by the legacy store.

    kind is one of: not-retained, corrupted, unknown
    """

    KINDS = ("not-retained", "corrupted", "unknown")

    def __init__(self, spec: str, message: str, kind: str = "unknown"):
        if kind not in self.KINDS:
            kind = "unknown"
        self.spec = spec
        self.kind = kind
        super().__init__(f"{spec}: {message} ({kind})")


def check_cancelled(cancel_event: Optional[threading.Event]):
    """Raise StopRequested when the run has been asked to stop"""
    if cancel_event is not None and cancel_event.is_set():
        raise StopRequested("Stop requested")


# ============================================================================
# TIME HELPERS
# ============================================================================

# Timestamps are UTC ticks: 100ns units since 0001-01-01T00:00:00Z
TICKS_PER_MILLISECOND = 10_000
TICKS_PER_SECOND = 10_000_000
TICKS_PER_MINUTE = 60 * TICKS_PER_SECOND
EPOCH_TICKS = 621_355_968_000_000_000

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ticks_from_datetime(dt: datetime) -> int:
    """Convert a datetime to UTC ticks. Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return EPOCH_TICKS + ((dt - _UNIX_EPOCH) // timedelta(microseconds=1)) * 10


def datetime_from_ticks(ticks: int) -> datetime:
    """Convert UTC ticks to an aware datetime (sub-microsecond ticks are dropped)"""
    return _UNIX_EPOCH + timedelta(microseconds=(ticks - EPOCH_TICKS) // 10)


def format_ticks(ticks: int) -> str:
    return datetime_from_ticks(ticks).strftime("%Y-%m-%d %H:%M:%S")


def minutes_to_ticks(minutes: float) -> int:
    return int(round(minutes * TICKS_PER_MINUTE))


# ============================================================================
# IDENTITY INTERNING
# ============================================================================


class IdentityTable:
    """
    Append-only bidirectional string <-> integer table.

    Ids are indices into the table's value arena, so they are only
    meaningful for the context that issued them.
    """

    def __init__(self, name: str):
        self.name = name
        self._values: List[str] = []
        self._ids: Dict[str, int] = {}

    def intern(self, value: str) -> int:
        existing = self._ids.get(value)
        if existing is not None:
            return existing

        new_id = len(self._values)
        self._values.append(value)
        self._ids[value] = new_id
        return new_id

    def resolve(self, identity: int) -> str:
        # Unknown ids are programming errors
        if identity < 0:
            raise IndexError(f"{self.name}: invalid id {identity}")
        return self._values[identity]

    def clear(self):
        self._values.clear()
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, value: str) -> bool:
        return value in self._ids


@dataclass
class MigrationContext:
    """Identity tables shared by every component of one pipeline run"""

    files: IdentityTable = field(default_factory=lambda: IdentityTable("files"))
    users: IdentityTable = field(default_factory=lambda: IdentityTable("users"))

    def reset(self):
        self.files.clear()
        self.users.clear()

    def revision(
        self,
        spec: str,
        version: int,
        at: int,
        user: str,
        comment: str = "",
        physical: str = "",
    ) -> "FileRevision":
        """Create a FileRevision, interning its file and user"""
        return FileRevision(
            file_id=self.files.intern(spec),
            version=version,
            at=at,
            user_id=self.users.intern(user),
            comment=comment or "",
            physical=physical,
        )


# ============================================================================
# DATA MODEL
# ============================================================================


@dataclass
class FileRevision:
    """One historical save of one file in the legacy store"""

    file_id: int
    version: int
    at: int
    user_id: int
    comment: str = ""
    physical: str = ""
    # Raw legacy user, kept once user_id has been mapped to an author
    original_user_id: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.at, self.version)


@dataclass(frozen=True)
class FileChange:
    """Latest revision of one file inside a commit"""

    at: int
    file_id: int
    version: int

    @classmethod
    def from_revision(cls, revision: FileRevision) -> "FileChange":
        return cls(at=revision.at, file_id=revision.file_id, version=revision.version)


@dataclass(frozen=True)
class LabelEvent:
    text: str
    at: int


@dataclass
class Commit:
    """
    Reconstructed atomic group of file changes.

    `at` is the timestamp of the most recent contributing revision, `comment`
    comes from the seeding revision. Each file appears once, with its highest
    version.
    """

    at: int
    author_id: int
    comment: str = ""
    changes: Dict[int, FileChange] = field(default_factory=dict)
    labels: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def seed(cls, revision: FileRevision) -> "Commit":
        commit = cls(at=revision.at, author_id=revision.user_id, comment=revision.comment)
        commit.add_revision(FileChange.from_revision(revision))
        return commit

    @property
    def files(self) -> List[FileChange]:
        return list(self.changes.values())

    def add_revision(self, change: FileChange):
        existing = self.changes.get(change.file_id)
        if existing is None or existing.version < change.version:
            self.changes[change.file_id] = change

    def add_label(self, text: str, ticks: int):
        if text in self.labels:
            old_ticks = self.labels[text]
            if old_ticks == ticks:
                raise DuplicateLabelError(
                    f"Commit at {self.at}: duplicated label {ticks}, {text}"
                )
            raise DuplicateLabelError(
                f"Commit at {self.at}: duplicated label {old_ticks}, {ticks}, {text}"
            )
        self.labels[text] = ticks

    def accepts(self, revision: FileRevision, silence_span: int) -> bool:
        """Same author, compatible comment and within the silence span"""
        return (
            revision.user_id == self.author_id
            and (not self.comment or revision.comment == self.comment)
            and revision.at - self.at <= silence_span
        )

    def merge(self, revision: FileRevision):
        self.at = revision.at
        self.add_revision(FileChange.from_revision(revision))


def make_tag(label: str) -> str:
    """Turn a legacy label into a git friendly tag name"""
    if label.startswith("(") and label.endswith(")") and len(label) >= 2:
        return make_tag(label[1:-1].strip())
    return (
        label.replace(" ", "_")
        .replace("~", "-")
        .replace("*", "+")
        .replace("?", "!")
        .replace('"', "'")
        .replace("[", "(")
        .replace("]", ")")
    )


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console reporting for the migration stages
    - Color-coded output (colorama)
    - Progress bars with ETA (tqdm)
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)

        print(f"\n{separator}")
        print(stage_text)
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " revisions"
    ) -> Optional[tqdm]:
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def progress(self, message: str, count: Optional[int] = None):
        if self.quiet:
            return
        if count is not None:
            print(f"   {message} ({count:,})", end="\r", flush=True)
        else:
            print(f"   {message}")

    def info(self, message: str):
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Always shown, on stderr"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def success(self, message: str):
        if not self.quiet:
            success_text = self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT)
            print(success_text)

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        header = self._colorize("📊 MIGRATION SUMMARY", Fore.MAGENTA + Style.BRIGHT)

        print(f"\n{separator}")
        print(header)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")

        time_text = self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW)
        print(f"\n{time_text}")
        print(f"{separator}\n")


class MemoryMonitor:
    """Monitor memory usage and enforce limits"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        """Get current memory usage in MB"""
        process = psutil.Process(os.getpid())
        memory_mb = process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )

        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb


def chunk_iterator(items: List, chunk_size: int = 1000):
    """Yield successive slices of at most chunk_size items"""
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


# ============================================================================
# STAGE 2: RAW VERSION LIST
# ============================================================================

_VERSION_RX = re.compile(
    r"^Ver:(?P<ver>[0-9]+)\tSpec:(?P<spec>[^\t]+)\tPhys:(?P<phys>[^\t]+)"
    r"\tAuthor:(?P<user>[^\t]+)\tAt:(?P<at>[0-9]+)\tDT:(?P<dt>[^\t]+)"
    r"\tComment:(?P<comment>.*)$"
)

UNKNOWN_PHYSICAL = "_UNKNOWN_"


def format_version_line(revision: FileRevision, ctx: MigrationContext) -> str:
    comment = (
        (revision.comment or "")
        .replace("\r\n", "\n")
        .replace("\r", "\n")
        .replace("\n", COMMENT_NEWLINE_SENTINEL)
    )
    return (
        f"Ver:{revision.version}\tSpec:{ctx.files.resolve(revision.file_id)}"
        f"\tPhys:{revision.physical or UNKNOWN_PHYSICAL}"
        f"\tAuthor:{ctx.users.resolve(revision.user_id)}\tAt:{revision.at}"
        f"\tDT:{format_ticks(revision.at)}\tComment:{comment}"
    )


def parse_version_line(line: str, ctx: MigrationContext) -> Optional[FileRevision]:
    """Parse one raw version record, None if the line is not a record"""
    m = _VERSION_RX.match(line)
    if not m:
        return None

    return ctx.revision(
        spec=m.group("spec"),
        version=int(m.group("ver")),
        at=int(m.group("at")),
        user=m.group("user"),
        comment=m.group("comment").replace(COMMENT_NEWLINE_SENTINEL, "\n"),
        physical=m.group("phys"),
    )


def save_revisions(path: str, revisions: Iterable[FileRevision], ctx: MigrationContext):
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        for revision in revisions:
            f.write(format_version_line(revision, ctx) + "\n")


def load_revisions(
    path: str,
    ctx: MigrationContext,
    reporter: Optional[ProgressReporter] = None,
    errors: Optional[List[str]] = None,
) -> List[FileRevision]:
    """
    Load the raw version list.

    Lines that are not version records are skipped; each one is appended to
    `errors` when a list is given.
    """
    reporter = reporter or ProgressReporter(quiet=True)
    reporter.info(f"Loading versions from {path}")

    revisions = []
    skipped = 0
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip("\n")
            revision = parse_version_line(line, ctx)
            if revision is None:
                if line.strip():
                    skipped += 1
                    if errors is not None:
                        errors.append(f"{path}:{line_no}: not a version record: {line[:80]}")
                continue

            revisions.append(revision)
            if len(revisions) % 10000 == 0:
                reporter.progress(
                    f"Loaded versions for {len(ctx.files)} files, {len(ctx.users)} users",
                    len(revisions),
                )

    reporter.progress(
        f"Loaded versions for {len(ctx.files)} files, {len(ctx.users)} users",
        len(revisions),
    )
    if skipped:
        reporter.warning(f"Skipped {skipped} malformed line(s) in {path}")
    return revisions


# ============================================================================
# STAGE 2: REVISION SOURCE
# ============================================================================


@dataclass
class LegacyVersion:
    """Revision metadata as yielded by the legacy store"""

    version: int
    at: int
    user: str
    comment: str = ""
    action: str = "Checked in "
    physical: str = ""


class RevisionSource:
    """
    Read access to the legacy store's per-file history.
    Concrete stores override both methods.
    """

    def head_version(self, spec: str) -> int:
        raise NotImplementedError

    def versions(self, spec: str) -> Iterable[LegacyVersion]:
        """Yield versions of spec; may raise RevisionSourceError"""
        raise NotImplementedError


SKIPPED_ACTIONS = ("Labeled ", "Branched ")
KNOWN_ACTIONS = ("Checked in ", "Created ", "Archived ", "Rollback to")
TIME_FIXED_NOTE = "! Time was fixed during VSS -> git conversion. Time can be incorrect !"


def normalize_username(user: str) -> str:
    return user.lower().replace(".", " ")


def normalize_spec(spec: str) -> str:
    return spec.lower().replace("\\", "/")


def relative_spec(spec: str) -> str:
    """`$/Project/file.c` -> `Project/file.c`"""
    return spec.lstrip("$/\\").replace("\\", "/")


def resolve_in_work_dir(work_dir: str, path: str) -> str:
    """Configured paths are relative to the work directory, not the cwd"""
    return path if os.path.isabs(path) else os.path.join(work_dir, path)


def fix_revision_times(revisions: List[FileRevision]) -> List[FileRevision]:
    """
    Order one file's revisions by version and make their times strictly
    increasing. Repaired revisions get a note appended to their comment.
    """
    revisions = sorted(revisions, key=lambda r: r.version)
    if not revisions:
        return revisions

    not_earlier_than = revisions[0].at
    for revision in revisions[1:]:
        if revision.at < not_earlier_than:
            revision.at = not_earlier_than + TICKS_PER_MILLISECOND
            revision.comment = f"{revision.comment}\n{TIME_FIXED_NOTE}\n".strip()
        not_earlier_than = revision.at

    return revisions


class VersionListBuilder:
    """
    Collect revision metadata for every file into the raw version list.

    With a metadata cache directory, each file's processed revisions are
    stored under its head version; a file whose head version is already
    cached is not read from the store again.
    """

    def __init__(
        self,
        ctx: MigrationContext,
        latest_only: Iterable[str] = (),
        latest_only_rx: Iterable[str] = (),
        metadata_cache_dir: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.ctx = ctx
        self.latest_only = {normalize_spec(s) for s in latest_only}
        self.latest_only_rx = [re.compile(rx, re.IGNORECASE) for rx in latest_only_rx]
        self.metadata_cache_dir = metadata_cache_dir
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.cancel_event = cancel_event
        self.errors: List[str] = []
        self.unknown_actions: List[str] = []
        self.cache_hits = 0

    @classmethod
    def from_config(
        cls,
        resolver: "ConfigResolver",
        ctx: MigrationContext,
        work_dir: str = ".",
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "VersionListBuilder":
        cache_dir = resolver.get("revisions_cache_dir")
        return cls(
            ctx,
            latest_only=resolver.get("latest_only") or [],
            latest_only_rx=resolver.get("latest_only_rx") or [],
            metadata_cache_dir=resolve_in_work_dir(work_dir, cache_dir) if cache_dir else None,
            reporter=reporter,
            cancel_event=cancel_event,
        )

    def metadata_cache_path(self, spec: str, head: int) -> str:
        return os.path.join(self.metadata_cache_dir, *relative_spec(spec).split("/")) + f"@{head}"

    def read_file(self, source: RevisionSource, spec: str) -> List[FileRevision]:
        """Revisions of one file, from the metadata cache when its head is known"""
        if not self.metadata_cache_dir:
            return self.collect(source, spec)

        cache_path = self.metadata_cache_path(spec, source.head_version(spec))
        if os.path.isfile(cache_path):
            self.cache_hits += 1
            return load_revisions(cache_path, self.ctx)

        revisions = self.collect(source, spec)
        os.makedirs(os.path.dirname(cache_path), exist_ok=True)
        save_revisions(cache_path, revisions, self.ctx)
        return revisions

    def is_latest_only(self, spec: str) -> bool:
        return normalize_spec(spec) in self.latest_only or any(
            rx.search(spec) for rx in self.latest_only_rx
        )

    def collect(self, source: RevisionSource, spec: str) -> List[FileRevision]:
        latest_only = self.is_latest_only(spec)

        revisions = []
        for ver in source.versions(spec):
            check_cancelled(self.cancel_event)

            if ver.action.startswith(SKIPPED_ACTIONS):
                continue
            if not ver.action.startswith(KNOWN_ACTIONS):
                self.unknown_actions.append(f"{spec}: Unknown action: {ver.action}")

            revisions.append(
                self.ctx.revision(
                    spec=spec,
                    version=ver.version,
                    at=ver.at,
                    user=normalize_username(ver.user),
                    comment=ver.comment,
                    physical=ver.physical or UNKNOWN_PHYSICAL,
                )
            )
            if latest_only:
                break

        return fix_revision_times(revisions)

    def build(
        self,
        source: RevisionSource,
        specs: List[str],
        output_path: str = RAW_VERSIONS_FILE,
        log_path: Optional[str] = RAW_VERSIONS_LOG_FILE,
    ) -> List[FileRevision]:
        self.reporter.stage_start("Version List", f"Building version list to {output_path}")

        all_revisions = []
        progress_bar = self.reporter.create_progress_bar(
            total=len(specs), desc="Reading history", unit=" files"
        )
        log = open(log_path, "w", encoding="utf-8") if log_path else None
        try:
            with open(output_path, "w", encoding="utf-8", newline="\n") as wr:
                for spec in specs:
                    check_cancelled(self.cancel_event)
                    try:
                        revisions = self.read_file(source, spec)
                    except RevisionSourceError as e:
                        self.errors.append(str(e))
                        if log:
                            log.write(f"ERROR: {spec}\n{e}\n")
                        self.reporter.warning(f"ERROR: {spec}: {e.kind}")
                        revisions = []

                    for revision in revisions:
                        wr.write(format_version_line(revision, self.ctx) + "\n")
                    all_revisions.extend(revisions)

                    if progress_bar:
                        progress_bar.update(1)
        finally:
            if progress_bar:
                progress_bar.close()
            if log:
                for line in self.unknown_actions:
                    log.write(line + "\n")
                log.close()

        self.reporter.stage_complete(
            "Version List",
            {
                "Files": f"{len(specs):,}",
                "Versions": f"{len(all_revisions):,}",
                "Errors": len(self.errors),
                "Cached files": self.cache_hits,
            },
        )
        return all_revisions


# ============================================================================
# STAGE 3: LABEL TIMELINE
# ============================================================================

_LABEL_RX = re.compile(r"^Label: (?P<at>[0-9]+)\t\t(?P<label>.*)$")


def format_label_line(text: str, ticks: int) -> str:
    return f"Label: {ticks}\t\t{text}"


class LabelTimeline:
    """Repository-wide labels ordered by time"""

    def __init__(self, labels: Iterable[LabelEvent] = ()):
        self._labels: List[LabelEvent] = list(labels)

    def add(self, text: str, ticks: int):
        self._labels.append(LabelEvent(text=text, at=ticks))

    def sort(self):
        # Stable: labels at the same time keep their source order
        self._labels.sort(key=lambda label: label.at)

    @property
    def texts(self) -> List[str]:
        return [label.text for label in self._labels]

    @property
    def times(self) -> List[int]:
        return [label.at for label in self._labels]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self):
        return iter(self._labels)

    @classmethod
    def load(cls, path: str) -> "LabelTimeline":
        timeline = cls()
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line.strip():
                    continue
                m = _LABEL_RX.match(line)
                if not m:
                    raise CommitParseError(f"Can not parse line: {line}")
                timeline.add(m.group("label"), int(m.group("at")))
        timeline.sort()
        return timeline

    def save(self, path: str):
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            for label in self._labels:
                f.write(format_label_line(label.text, label.at) + "\n")


# ============================================================================
# AUTHOR MAPPING
# ============================================================================


def load_user_mappings(mapping_files: Iterable[str]) -> Dict[str, str]:
    """
    Load `legacy user = author` files in order.

    Keys are case-folded. A key repeated inside one file is an error; a key
    repeated in a later file overrides the earlier one.
    """
    mapping: Dict[str, str] = {}

    for mapping_file in mapping_files:
        file_mapping: Dict[str, str] = {}
        with open(mapping_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" not in line:
                    raise AuthorMappingError(f"Invalid user mapping file: {mapping_file}")

                key, value = line.split("=", 1)
                key = key.strip().lower()
                if key in file_mapping:
                    raise AuthorMappingError(
                        f"Invalid user mapping file: {mapping_file}; Duplicate entry: {key}"
                    )
                file_mapping[key] = value.strip()

        mapping.update(file_mapping)

    return mapping


def resolve_authors(
    revisions: Iterable[FileRevision],
    mapping_files: Iterable[str],
    ctx: MigrationContext,
    cancel_event: Optional[threading.Event] = None,
) -> Set[str]:
    """
    Rewrite each revision's user to its mapped author, in place.

    Returns the set of case-folded legacy users without a mapping; those
    revisions keep their raw user.
    """
    mapping = load_user_mappings(mapping_files)
    unmapped: Set[str] = set()

    for revision in revisions:
        check_cancelled(cancel_event)

        user = ctx.users.resolve(revision.user_id).lower()
        author = mapping.get(user)
        if author is None:
            unmapped.add(user)
            continue

        revision.original_user_id = revision.user_id
        revision.user_id = ctx.users.intern(author)

    return unmapped


def report_unmapped(
    unmapped: Set[str], strict: bool, reporter: Optional[ProgressReporter] = None
):
    """List unmapped users as ready-to-fill mapping lines; abort in strict mode"""
    if not unmapped:
        return

    reporter = reporter or ProgressReporter()
    reporter.warning("Not mapped users:")
    for user in sorted(unmapped):
        print(f"{user} = ?")

    if strict:
        raise UnmappedAuthorsError(unmapped)


# ============================================================================
# STAGE 5: COMMIT RECONSTRUCTION
# ============================================================================


class CommitBuilder:
    """
    Accumulates time-ordered revisions into commits in a single forward scan.

    The open commit absorbs the next revision while the author matches, the
    comment is compatible, the gap stays within the silence span and no
    pending label is older than the revision. Otherwise pending labels older
    than the revision are attached to the open commit, which is closed.
    """

    def __init__(self, labels: Iterable[LabelEvent], silence_span: int):
        self.silence_span = silence_span
        self.commits: List[Commit] = []
        self._labels = sorted(labels, key=lambda label: label.at)
        self._label_pos = 0
        self._open: Optional[Commit] = None

    @property
    def open_commit(self) -> Optional[Commit]:
        return self._open

    @property
    def pending_labels(self) -> List[LabelEvent]:
        return self._labels[self._label_pos :]

    def _label_pending_before(self, ticks: int) -> bool:
        return (
            self._label_pos < len(self._labels)
            and self._labels[self._label_pos].at < ticks
        )

    def _drain_labels(self, before: Optional[int] = None):
        while self._label_pos < len(self._labels):
            label = self._labels[self._label_pos]
            if before is not None and label.at >= before:
                break
            self._open.add_label(label.text, label.at)
            self._label_pos += 1

    def feed(self, revision: FileRevision):
        if self._open is None:
            self._open = Commit.seed(revision)
            return

        if self._open.accepts(revision, self.silence_span) and not self._label_pending_before(
            revision.at
        ):
            self._open.merge(revision)
            return

        self._drain_labels(before=revision.at)
        self.commits.append(self._open)
        self._open = Commit.seed(revision)

    def finish(self) -> List[Commit]:
        if self._open is not None:
            self._drain_labels()
            self.commits.append(self._open)
            self._open = None
        return self.commits


def build_commits(
    revisions: List[FileRevision],
    labels: Iterable[LabelEvent],
    silence_span: int,
    cancel_event: Optional[threading.Event] = None,
    reporter: Optional[ProgressReporter] = None,
    memory_monitor: Optional[MemoryMonitor] = None,
) -> List[Commit]:
    """
    Reconstruct commits from revisions ordered by (time, version).

    Raises StopRequested when cancelled; the open commit is then discarded.
    """
    if not revisions:
        return []

    reporter = reporter or ProgressReporter(quiet=True)
    ordered = sorted(revisions, key=lambda r: r.sort_key)
    builder = CommitBuilder(labels, silence_span)

    reporter.info(f"Building commits from {len(ordered):,} revisions")
    progress_bar = reporter.create_progress_bar(total=len(ordered), desc="Building commits")
    try:
        for index, revision in enumerate(ordered):
            check_cancelled(cancel_event)
            builder.feed(revision)

            if progress_bar:
                progress_bar.update(1)
            if memory_monitor and index and index % 5000 == 0:
                memory_mb = memory_monitor.check_memory()
                if reporter.verbose:
                    reporter.info(f"Memory usage: {memory_mb:.1f} MB")
    finally:
        if progress_bar:
            progress_bar.close()

    return builder.finish()


# ============================================================================
# STAGE 5: COMMIT LIST CODEC
# ============================================================================

_COMMIT_RX = re.compile(
    r"^Commit:(?P<at>[0-9]+)\t\tAuthor:(?P<user>.+?)\t\tComment:(?P<comment>.*)$"
)
_FILE_RX = re.compile(r"^\t(?P<ver>[0-9]+):(?P<at>[0-9]+):(?P<spec>.+)$")


def serialize_multiline_text(text: Optional[str]) -> str:
    if not text or not text.strip():
        return ""
    return text.replace("\n", COMMENT_NEWLINE_SENTINEL).replace("\r", "")


def deserialize_multiline_text(line: str) -> str:
    return line.replace(COMMENT_NEWLINE_SENTINEL, "\n")


def commit_lines(commit: Commit, ctx: MigrationContext) -> List[str]:
    lines = [
        f"Commit:{commit.at}\t\tAuthor:{ctx.users.resolve(commit.author_id)}"
        f"\t\tComment:{serialize_multiline_text(commit.comment)}"
    ]
    lines.extend(format_label_line(text, ticks) for text, ticks in commit.labels.items())
    lines.extend(
        f"\t{change.version}:{change.at}:{ctx.files.resolve(change.file_id)}"
        for change in commit.files
    )
    return lines


def write_commits(commits: Iterable[Commit], ctx: MigrationContext) -> str:
    """Encode commits as the line-oriented commit list"""
    lines = []
    for commit in commits:
        lines.extend(commit_lines(commit, ctx))
    return "".join(line + "\n" for line in lines)


def read_commits(
    text: str,
    ctx: MigrationContext,
    reporter: Optional[ProgressReporter] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Commit]:
    """
    Decode a commit list. Any malformed line raises CommitParseError; there
    is no partial result.
    """
    reporter = reporter or ProgressReporter(quiet=True)
    commits: List[Commit] = []
    commit: Optional[Commit] = None
    file_count = label_count = 0

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    for line in lines:
        check_cancelled(cancel_event)

        if line.startswith("Commit:"):
            m = _COMMIT_RX.match(line)
            if not m:
                raise CommitParseError(f"Can not parse line: {line}")

            if commits and len(commits) % 1000 == 0:
                reporter.progress(
                    f"Loaded {len(commits)} commits, {file_count} files, {label_count} labels"
                )

            commit = Commit(
                at=int(m.group("at")),
                author_id=ctx.users.intern(m.group("user")),
                comment=deserialize_multiline_text(m.group("comment")),
            )
            commits.append(commit)

        elif line.startswith("Label: "):
            m = _LABEL_RX.match(line)
            if not m or commit is None:
                raise CommitParseError(f"Can not parse line: {line}")
            commit.add_label(m.group("label"), int(m.group("at")))
            label_count += 1

        elif line.startswith("\t"):
            m = _FILE_RX.match(line)
            if not m or commit is None:
                raise CommitParseError(f"Can not parse line: {line}")
            commit.add_revision(
                FileChange(
                    at=int(m.group("at")),
                    file_id=ctx.files.intern(m.group("spec")),
                    version=int(m.group("ver")),
                )
            )
            file_count += 1

        else:
            raise CommitParseError(f"Can not parse line: {line}")

    reporter.progress(
        f"Loaded {len(commits)} commits, {file_count} files, {label_count} labels"
    )
    return commits


def write_commit_log(commits: Iterable[Commit], ctx: MigrationContext) -> str:
    """Human readable audit log of the commit list (never parsed back)"""
    out = []
    for commit in commits:
        out.append(
            f"{commit.at} {format_ticks(commit.at)} {ctx.users.resolve(commit.author_id)}\n"
        )
        comment = "\n".join("\t" + part for part in (commit.comment or "").split("\n")).strip()
        if comment:
            out.append("\t" + comment + "\n")
    return "".join(out)


def save_commits(path: str, commits: List[Commit], ctx: MigrationContext):
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        f.write(write_commits(commits, ctx))


def load_commits(
    path: str,
    ctx: MigrationContext,
    reporter: Optional[ProgressReporter] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Commit]:
    reporter = reporter or ProgressReporter(quiet=True)
    reporter.info(f"Loading commits from {path}")
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    return read_commits(text, ctx, reporter=reporter, cancel_event=cancel_event)


# ============================================================================
# STAGE 5: PIPELINE
# ============================================================================


class CommitsStage:
    """Raw versions + labels + author mappings -> commit list and audit log"""

    def __init__(
        self,
        ctx: MigrationContext,
        work_dir: str = ".",
        revisions_file: str = RAW_VERSIONS_FILE,
        labels_file: str = LABELS_FILE,
        commits_file: str = COMMITS_FILE,
        commits_log_file: str = COMMITS_LOG_FILE,
        author_files: Iterable[str] = (),
        silence_span: int = minutes_to_ticks(120),
        strict_authors: bool = False,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
        memory_limit_mb: Optional[float] = None,
    ):
        self.ctx = ctx
        self.work_dir = work_dir
        self.revisions_path = os.path.join(work_dir, revisions_file)
        self.labels_path = os.path.join(work_dir, labels_file)
        self.commits_path = os.path.join(work_dir, commits_file)
        self.commits_log_path = os.path.join(work_dir, commits_log_file)
        self.author_files = list(author_files)
        self.silence_span = silence_span
        self.strict_authors = strict_authors
        self.reporter = reporter or ProgressReporter()
        self.cancel_event = cancel_event
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.errors: List[str] = []
        self.unmapped: Set[str] = set()

    def load_labels(self) -> LabelTimeline:
        if not os.path.exists(self.labels_path):
            self.reporter.warning(f"No label list at {self.labels_path}; building without labels")
            return LabelTimeline()
        return LabelTimeline.load(self.labels_path)

    def run(self) -> List[Commit]:
        self.reporter.stage_start("Build Commits", f"Reconstructing commits into {self.commits_path}")

        if os.path.exists(self.commits_path):
            os.remove(self.commits_path)

        revisions = load_revisions(
            self.revisions_path, self.ctx, reporter=self.reporter, errors=self.errors
        )
        labels = self.load_labels()

        self.unmapped = resolve_authors(
            revisions, self.author_files, self.ctx, cancel_event=self.cancel_event
        )
        report_unmapped(self.unmapped, self.strict_authors, self.reporter)

        commits = build_commits(
            revisions,
            labels,
            self.silence_span,
            cancel_event=self.cancel_event,
            reporter=self.reporter,
            memory_monitor=self.memory_monitor,
        )

        check_cancelled(self.cancel_event)
        save_commits(self.commits_path, commits, self.ctx)
        with open(self.commits_log_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(write_commit_log(commits, self.ctx))

        self.reporter.info(f"{len(commits)} commits produced.")
        self.reporter.stage_complete(
            "Build Commits",
            {
                "Revisions": f"{len(revisions):,}",
                "Labels": f"{len(labels):,}",
                "Commits": f"{len(commits):,}",
                "Unmapped users": len(self.unmapped),
            },
        )
        return commits


def summarize_commits(commits: List[Commit], ctx: MigrationContext) -> Dict[str, Any]:
    files: Set[int] = set()
    authors: Set[int] = set()
    changes = labels = 0
    for commit in commits:
        files.update(commit.changes)
        authors.add(commit.author_id)
        changes += len(commit.changes)
        labels += len(commit.labels)

    stats: Dict[str, Any] = {
        "Commits": f"{len(commits):,}",
        "File changes": f"{changes:,}",
        "Distinct files": f"{len(files):,}",
        "Labels": f"{labels:,}",
        "Authors": f"{len(authors):,}",
    }
    if commits:
        stats["First commit"] = format_ticks(commits[0].at)
        stats["Last commit"] = format_ticks(commits[-1].at)
    return stats


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_NAMES = [".vssmigrate.yaml", ".vssmigrate.yml", ".vssmigrate.json"]

DEFAULTS: Dict[str, Any] = {
    "revisions_file": RAW_VERSIONS_FILE,
    "labels_file": LABELS_FILE,
    "commits_file": COMMITS_FILE,
    "commits_log_file": COMMITS_LOG_FILE,
    "authors": [],
    "silence_minutes": 120,
    "strict_authors": False,
    "memory_limit": None,
    "latest_only": [],
    "latest_only_rx": [],
    "git_exe": "git",
    "git_repo_dir": "_git",
    "git_default_author_domain": "",
    "cache_dir": ".cache",
    "revisions_cache_dir": ".cache-revs",
    "import_unimportant_only": False,
    "mangle_import_path": [],
    "unimportant_diff": [],
    "censor_groups": {},
}

PRESETS: Dict[str, Dict[str, Any]] = {
    "strict": {"strict_authors": True},
    "fine": {"silence_minutes": 10},
    "coarse": {"silence_minutes": 480},
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        elif file_ext == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(work_dir: str) -> Optional[str]:
    """Look for .vssmigrate.{yaml,yml,json} in the work directory, then cwd"""
    for search_dir in [work_dir, os.getcwd()]:
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        work_dir: str,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config: Dict[str, Any] = {}
        self.config_path = config_path or find_config_file(work_dir)

        if self.config_path:
            self.config = load_config_file(self.config_path)
            if not config_path and reporter:
                reporter.info(f"Auto-discovered configuration: {self.config_path}")

        # kebab-case keys are accepted in files
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        final_preset_name = preset_name or self.config.get("preset")
        if final_preset_name and final_preset_name not in PRESETS:
            raise ValueError(f"Unknown preset: {final_preset_name}")
        self.preset = PRESETS.get(final_preset_name, {}) if final_preset_name else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        if default is not None:
            return default
        return DEFAULTS.get(key)


# ============================================================================
# CLI INTERFACE
# ============================================================================


def install_stop_handler(cancel_event: threading.Event):
    """Route Ctrl+C to the cancellation event; returns the previous handler"""

    def _handler(signum, frame):
        cancel_event.set()

    return signal.signal(signal.SIGINT, _handler)


def run_guarded(
    reporter: ProgressReporter, verbose: bool, action: Callable[[threading.Event], Any]
) -> Any:
    """Run a stage, mapping a stop request to exit code 130 and failures to 1"""
    cancel_event = threading.Event()
    previous = install_stop_handler(cancel_event)
    try:
        return action(cancel_event)
    except StopRequested:
        reporter.warning("Stopped. Rerun the stage to start it again from scratch.")
        sys.exit(130)
    except click.Abort:
        raise
    except Exception as e:
        reporter.error(str(e))
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def common_options(func):
    options = [
        click.option(
            "--config",
            type=click.Path(exists=True, dir_okay=False),
            help="Configuration file path (.yaml or .json)",
        ),
        click.option(
            "--preset",
            type=click.Choice(sorted(PRESETS)),
            help="Use predefined settings",
        ),
        click.option(
            "-w",
            "--work-dir",
            type=click.Path(exists=True, file_okay=False),
            default=".",
            show_default=True,
            help="Directory holding the stage artifacts",
        ),
        click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"),
        click.option("-v", "--verbose", is_flag=True, default=None, help="Show detailed progress"),
        click.option("--no-color", is_flag=True, default=None, help="Disable colored output"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _make_reporter(resolver: ConfigResolver) -> ProgressReporter:
    return ProgressReporter(
        quiet=bool(resolver.get("quiet", False)),
        verbose=bool(resolver.get("verbose", False)),
        use_colors=not resolver.get("no_color", False),
    )


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(version=VERSION)
def cli():
    """
    VSS History Migrator - rebuilds commit history from a SourceSafe
    version list and replays it into git.
    """


@cli.command("build-commits")
@common_options
@click.option(
    "--authors",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Author mapping file (user = Name <email>); repeatable, later files win",
)
@click.option("--silence-minutes", type=float, help="Max gap between saves of one commit")
@click.option(
    "--strict-authors",
    is_flag=True,
    default=None,
    help="Abort when some legacy users are not mapped",
)
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option("--dry-run", is_flag=True, help="Show resolved settings and exit")
def build_commits_command(config, preset, work_dir, dry_run, **kwargs):
    """Reconstruct commits from the raw version list and the label list."""
    kwargs["authors"] = list(kwargs["authors"]) or None
    resolver = ConfigResolver(kwargs, config, preset, work_dir)
    reporter = _make_reporter(resolver)

    silence_minutes = float(resolver.get("silence_minutes"))
    strict_authors = bool(resolver.get("strict_authors"))
    author_files = resolver.get("authors") or []

    if dry_run:
        reporter.info("DRY RUN MODE - No commits will be built")
        reporter.info(f"Work directory: {work_dir}")
        reporter.info(f"Silence span: {silence_minutes:g} minutes")
        reporter.info(f"Strict authors: {strict_authors}")
        reporter.info(f"Author mappings: {', '.join(author_files) or '(none)'}")
        return

    def action(cancel_event):
        ctx = MigrationContext()
        stage = CommitsStage(
            ctx,
            work_dir=work_dir,
            revisions_file=resolver.get("revisions_file"),
            labels_file=resolver.get("labels_file"),
            commits_file=resolver.get("commits_file"),
            commits_log_file=resolver.get("commits_log_file"),
            author_files=author_files,
            silence_span=minutes_to_ticks(silence_minutes),
            strict_authors=strict_authors,
            reporter=reporter,
            cancel_event=cancel_event,
            memory_limit_mb=resolver.get("memory_limit"),
        )
        try:
            commits = stage.run()
        finally:
            if stage.errors:
                with open(os.path.join(work_dir, ERRORS_FILE), "w", encoding="utf-8") as f:
                    f.write("\n".join(stage.errors))
                reporter.warning(f"Errors logged to {ERRORS_FILE}")

        summary = summarize_commits(commits, ctx)
        summary["Unmapped users"] = len(stage.unmapped)
        summary["Peak memory"] = f"{stage.memory_monitor.get_peak():.1f} MB"
        reporter.summary(summary)
        reporter.success(f"Build commits list complete. Check {stage.commits_path}")

    run_guarded(reporter, reporter.verbose, action)


@cli.command("stats")
@common_options
def stats_command(config, preset, work_dir, **kwargs):
    """Summarize an existing commit list."""
    resolver = ConfigResolver(kwargs, config, preset, work_dir)
    reporter = _make_reporter(resolver)

    def action(cancel_event):
        ctx = MigrationContext()
        commits = load_commits(
            os.path.join(work_dir, resolver.get("commits_file")),
            ctx,
            reporter=reporter,
            cancel_event=cancel_event,
        )
        reporter.summary(summarize_commits(commits, ctx))

    run_guarded(reporter, reporter.verbose, action)


@cli.command("import")
@common_options
@click.option("--new-session", is_flag=True, help="Forget import progress and start from the first commit")
@click.option("--init-repo", is_flag=True, help="Wipe and re-create the target git repository")
@click.option("--git-repo-dir", type=click.Path(file_okay=False), help="Target git repository")
@click.option("--cache-dir", type=click.Path(file_okay=False), help="Revision content cache")
@click.option(
    "--unimportant-only",
    "import_unimportant_only",
    is_flag=True,
    default=None,
    help="Import only files matched by the unimportant-diff rules",
)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def import_command(config, preset, work_dir, new_session, init_repo, yes, **kwargs):
    """Replay the commit list into a git repository."""
    import vss_replay

    resolver = ConfigResolver(kwargs, config, preset, work_dir)
    reporter = _make_reporter(resolver)

    def action(cancel_event):
        ctx = MigrationContext()
        commits = load_commits(
            os.path.join(work_dir, resolver.get("commits_file")),
            ctx,
            reporter=reporter,
            cancel_event=cancel_event,
        )

        git_exe = resolver.get("git_exe")
        repo_dir = resolve_in_work_dir(work_dir, resolver.get("git_repo_dir"))
        if init_repo:
            vss_replay.create_git_repository(git_exe, repo_dir, cancel_event=cancel_event)

        importer = vss_replay.Importer.from_config(
            resolver, ctx, work_dir=work_dir, reporter=reporter, cancel_event=cancel_event
        )

        start = 0 if (new_session or init_repo) else importer.resume_index()
        if start >= len(commits):
            reporter.success("Nothing to import.")
            return
        if start and not yes:
            author = ctx.users.resolve(commits[start].author_id)
            click.confirm(
                f"Cleanup work tree and start import from commit #{start} by {author}",
                abort=True,
            )

        importer.run(commits, new_session=new_session or init_repo)

    run_guarded(reporter, reporter.verbose, action)


main = cli


if __name__ == "__main__":
    cli()
