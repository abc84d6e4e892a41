#!/usr/bin/env python3
"""
VSS History Migrator - Stage 6: Import

Replays the commit list into a target version-control system, one target
commit per reconstructed commit and one tag per label. The importer only
talks to a ReplayDriver; GitDriver is the git implementation.

Import progress is appended to 6-import.txt after every commit so an
interrupted import resumes at the next commit.
"""

import os
import re
import shutil
import stat
import subprocess
import threading
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, TextIO, Tuple

from vssmigrate import (
    Commit,
    MigrationContext,
    MigrationError,
    ProgressReporter,
    check_cancelled,
    chunk_iterator,
    datetime_from_ticks,
    format_ticks,
    make_tag,
    relative_spec,
    resolve_in_work_dir,
)

IMPORT_PROGRESS_FILE = "6-import.txt"
IMPORT_LOG_FILE = "log-6-import.txt"
COMMIT_MESSAGE_FILE = "IMPORT_COMMIT_MESSAGE"

# Files passed to a single `git add`
ADD_CHUNK_SIZE = 25


class ReplayError(MigrationError):
    """Target system refused an operation, or replay input is incomplete"""


# ============================================================================
# DRIVERS
# ============================================================================


class ReplayDriver:
    """
    Capability interface of a replay target.
    Concrete targets override every operation.
    """

    log: Optional[TextIO] = None

    def attach_log(self, log: Optional[TextIO]):
        self.log = log

    def _log(self, message: str):
        if self.log is not None:
            self.log.write(message + "\n")

    @property
    def working_copy(self) -> str:
        raise NotImplementedError

    def start_revision(self):
        raise NotImplementedError

    def add_directory(self, path: str):
        raise NotImplementedError

    def add_files(self, paths: List[str]):
        raise NotImplementedError

    def get_diff(self, path: str) -> str:
        raise NotImplementedError

    def revert(self, path: str):
        raise NotImplementedError

    def commit_revision(self, commit: Commit, ctx: MigrationContext):
        raise NotImplementedError


def build_commit_message(commit: Commit, ctx: MigrationContext) -> str:
    """
    Labels in braces (already parenthesized labels as-is), the comment, the
    file count and the author display name, space separated.
    """
    parts = [
        label if label.startswith("(") and label.endswith(")") else "{" + label + "}"
        for label in commit.labels
    ]
    if commit.comment:
        parts.append(commit.comment)

    count = len(commit.changes)
    parts.append(f"({count} file{'' if count == 1 else 's'})")

    author = ctx.users.resolve(commit.author_id)
    pos = author.find("<")
    parts.append(author if pos < 0 else author[:pos].strip())
    return " ".join(parts)


def format_git_author(author: str, default_domain: str = "") -> str:
    """Return `Name <email>`, deriving missing parts from a bare user or email"""
    if "<" in author and ">" in author:
        return author

    name = author.split("@", 1)[0]
    email = author if "@" in author else author + default_domain
    return f"{name} <{email}>"


class GitDriver(ReplayDriver):
    """Replay target backed by the git executable"""

    def __init__(
        self,
        git_exe: str,
        repo_dir: str,
        default_author_domain: str = "",
        log: Optional[TextIO] = None,
    ):
        self.git_exe = git_exe
        self.repo_dir = os.path.abspath(repo_dir)
        self.default_author_domain = default_author_domain or ""
        self.log = log

        self.git_dir = self.run_git("rev-parse", "--absolute-git-dir").stdout.strip()
        self.check_working_copy_status()

    @property
    def working_copy(self) -> str:
        return self.repo_dir

    def run_git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.git_exe, "-C", self.repo_dir] + list(args)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise ReplayError(f"Can not run {self.git_exe}: {e}") from e

        self._log(f"git {' '.join(args)} -> {result.returncode}")
        if check and result.returncode != 0:
            raise ReplayError(
                f"Git command failed: git {' '.join(args)}\n{result.stderr.strip()}"
            )
        return result

    def check_working_copy_status(self):
        status = self.run_git("status", "--porcelain").stdout
        if status.strip():
            raise ReplayError(f"Working tree should be clean. Status say:\n{status}")

    def start_revision(self):
        self.check_working_copy_status()

    def add_directory(self, path: str):
        self._log(f"Add dir '{path}'")
        os.makedirs(path, exist_ok=True)

    def add_files(self, paths: List[str]):
        for chunk in chunk_iterator(list(paths), ADD_CHUNK_SIZE):
            self.run_git("add", "-f", "--", *chunk)

    def get_diff(self, path: str) -> str:
        return self.run_git("diff", "--unified=0", "--", path).stdout

    def revert(self, path: str):
        self.run_git("reset", "HEAD", "--", path)
        self.run_git("checkout", "--", path)

    def commit_revision(self, commit: Commit, ctx: MigrationContext):
        message_file = os.path.join(self.git_dir, COMMIT_MESSAGE_FILE)
        with open(message_file, "w", encoding="utf-8") as f:
            f.write(build_commit_message(commit, ctx))

        author = format_git_author(
            ctx.users.resolve(commit.author_id), self.default_author_domain
        )
        # Empty commits keep target history aligned with the commit list
        self.run_git(
            "commit",
            "--all",
            "--allow-empty",
            "--allow-empty-message",
            f"--file={message_file}",
            f"--author={author}",
            f"--date={datetime_from_ticks(commit.at).isoformat()}",
        )

        for label in commit.labels:
            tag = make_tag(label)
            try:
                self.run_git("tag", tag)
            except ReplayError:
                self._log(
                    f"Error adding tag '{tag}' (for label '{label}') to commit "
                    f"{format_ticks(commit.at)} by {ctx.users.resolve(commit.author_id)}"
                )
                self.run_git("reset", "--hard", "HEAD^1")
                raise


def create_git_repository(
    git_exe: str, repo_dir: str, cancel_event: Optional[threading.Event] = None
):
    """Wipe repo_dir and initialize an empty git repository in it"""
    if os.path.isdir(repo_dir):
        for entry in os.listdir(repo_dir):
            check_cancelled(cancel_event)
            path = os.path.join(repo_dir, entry)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.chmod(path, stat.S_IWRITE)
                os.remove(path)

    os.makedirs(repo_dir, exist_ok=True)
    result = subprocess.run(
        [git_exe, "-C", repo_dir, "init"], capture_output=True, text=True
    )
    if result.returncode != 0:
        raise ReplayError(f"Git command failed: git init\n{result.stderr.strip()}")


# ============================================================================
# REVISION CONTENT
# ============================================================================


class RevisionCache:
    """Where the content of a file version can be read from"""

    def get_file_path(self, spec: str, version: int) -> Optional[str]:
        raise NotImplementedError


class DirectoryRevisionCache(RevisionCache):
    """Content stored as <cache_dir>/<relative spec>@<version>"""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir

    def entry_path(self, spec: str, version: int) -> str:
        return os.path.join(self.cache_dir, *relative_spec(spec).split("/")) + f"@{version}"

    def get_file_path(self, spec: str, version: int) -> Optional[str]:
        path = self.entry_path(spec, version)
        return path if os.path.isfile(path) else None

    def add(self, spec: str, version: int, source_path: str) -> str:
        path = self.entry_path(spec, version)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        shutil.copyfile(source_path, path)
        return path


# ============================================================================
# CONTENT RULES: PATH MANGLING, CENSORING, UNIMPORTANT DIFFS
# ============================================================================


def compile_mangle_rules(pairs: Iterable[Iterable[str]]) -> List[Tuple[Pattern, str]]:
    return [(re.compile(pattern, re.IGNORECASE), replacement) for pattern, replacement in pairs]


def mangle_path(rel_path: str, rules: List[Tuple[Pattern, str]]) -> str:
    for rx, replacement in rules:
        rel_path = rx.sub(replacement, rel_path)
    return rel_path


@dataclass
class CensorGroup:
    name: str
    file_rx: List[Pattern] = field(default_factory=list)
    replacements: List[Tuple[Pattern, str]] = field(default_factory=list)
    encoding: str = "utf-8"


def _python_encoding(value: Any) -> str:
    if value is None or value == "utf-8-no-bom":
        return "utf-8"
    if isinstance(value, int) or str(value).isdigit():
        return f"cp{value}"
    return str(value)


def load_censors(groups: Dict[str, Dict[str, Any]]) -> List[CensorGroup]:
    """
    Build censor groups from configuration:

        censor_groups:
          secrets:
            file_rx: ['\\.config$']
            encoding: 1251
            replacements: [['password=.*', 'password=***']]
    """
    censors = []
    for name, group in (groups or {}).items():
        censors.append(
            CensorGroup(
                name=name,
                file_rx=[re.compile(rx, re.IGNORECASE) for rx in group.get("file_rx", [])],
                replacements=[
                    (re.compile(match, re.IGNORECASE), replace)
                    for match, replace in group.get("replacements", [])
                ],
                encoding=_python_encoding(group.get("encoding")),
            )
        )
    return censors


def apply_censors(root_dir: str, path: str, censors: List[CensorGroup]) -> bool:
    """
    Apply the line replacements of every group whose file pattern matches.
    The file is rewritten only when a line changed; returns True then.
    """
    test_path = os.path.relpath(path, root_dir).replace(os.sep, "/")
    matching = [cg for cg in censors if any(rx.search(test_path) for rx in cg.file_rx)]
    if not matching:
        return False

    encoding = matching[0].encoding
    with open(path, "r", encoding=encoding, newline="") as f:
        lines = f.read().splitlines(keepends=True)

    modified = False
    for group in matching:
        for rx, replacement in group.replacements:
            for i, line in enumerate(lines):
                body = line.rstrip("\r\n")
                new_body = rx.sub(replacement, body)
                if new_body != body:
                    lines[i] = new_body + line[len(body) :]
                    modified = True

    if not modified:
        return False

    with open(path, "w", encoding=encoding, newline="") as f:
        f.write("".join(lines))
    return True


def parse_unimportant(entries: Iterable[str]) -> List[Tuple[Pattern, Pattern]]:
    """`file_rx?line_rx` entries -> compiled (file, line) pattern pairs"""
    rules = []
    for entry in entries:
        sep = entry.find("?")
        if sep == -1:
            raise ValueError(
                f"Incorrect unimportant-diff: {entry}\n"
                "Absent separator '?' between filename and unimportant regex"
            )
        rules.append(
            (
                re.compile(entry[:sep], re.IGNORECASE),
                re.compile(entry[sep + 1 :], re.IGNORECASE),
            )
        )
    return rules


def diff_is_unimportant(diff: str, patterns: List[Pattern]) -> bool:
    """True when every added/removed line of a zero-context diff matches a pattern"""
    lines = [line for line in diff.splitlines() if line]

    # skip the header up to the first hunk
    while lines and not lines[0].startswith("@@"):
        lines.pop(0)

    changed = [line for line in lines if line.startswith(("-", "+"))]
    return all(any(p.search(line) for p in patterns) for line in changed)


def _norm_rel(rel_path: str) -> str:
    return rel_path.lower().replace("\\", "/").strip("/")


# ============================================================================
# IMPORTER
# ============================================================================


class Importer:
    """Replays commits one by one through a ReplayDriver"""

    def __init__(
        self,
        driver: ReplayDriver,
        cache: RevisionCache,
        ctx: MigrationContext,
        work_dir: str = ".",
        mangle_rules: Optional[List[Tuple[Pattern, str]]] = None,
        unimportant: Optional[List[Tuple[Pattern, Pattern]]] = None,
        censors: Optional[List[CensorGroup]] = None,
        unimportant_only: bool = False,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.driver = driver
        self.cache = cache
        self.ctx = ctx
        self.progress_path = os.path.join(work_dir, IMPORT_PROGRESS_FILE)
        self.log_path = os.path.join(work_dir, IMPORT_LOG_FILE)
        self.mangle_rules = mangle_rules or []
        self.unimportant = unimportant or []
        self.censors = censors or []
        self.unimportant_only = unimportant_only
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.cancel_event = cancel_event

    @classmethod
    def from_config(
        cls,
        resolver,
        ctx: MigrationContext,
        work_dir: str = ".",
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "Importer":
        driver = GitDriver(
            resolver.get("git_exe"),
            resolve_in_work_dir(work_dir, resolver.get("git_repo_dir")),
            resolver.get("git_default_author_domain"),
        )
        return cls(
            driver,
            DirectoryRevisionCache(resolve_in_work_dir(work_dir, resolver.get("cache_dir"))),
            ctx,
            work_dir=work_dir,
            mangle_rules=compile_mangle_rules(resolver.get("mangle_import_path")),
            unimportant=parse_unimportant(resolver.get("unimportant_diff")),
            censors=load_censors(resolver.get("censor_groups")),
            unimportant_only=bool(resolver.get("import_unimportant_only")),
            reporter=reporter,
            cancel_event=cancel_event,
        )

    def resume_index(self) -> int:
        """Index of the first commit not yet imported"""
        if not os.path.exists(self.progress_path):
            return 0
        with open(self.progress_path, "r", encoding="utf-8") as f:
            done = [line.strip() for line in f if line.strip()]
        return int(done[-1]) + 1 if done else 0

    def run(self, commits: List[Commit], new_session: bool = False) -> int:
        """Import commits from the resume point; returns how many were imported"""
        if new_session and os.path.exists(self.progress_path):
            os.remove(self.progress_path)

        start = self.resume_index()
        total = len(commits)
        self.reporter.stage_start("Import", f"Importing commits #{start}..#{total - 1}")

        imported = 0
        with open(self.log_path, "w", encoding="utf-8") as log:
            self.driver.attach_log(log)
            try:
                for i in range(start, total):
                    check_cancelled(self.cancel_event)

                    commit = commits[i]
                    self.reporter.progress(
                        f"[{i:6}/{total}] Import: {format_ticks(commit.at)}, "
                        f"by {self.ctx.users.resolve(commit.author_id)}"
                    )

                    self.driver.start_revision()
                    self.load_revision(commit, log)
                    self.driver.commit_revision(commit, self.ctx)

                    with open(self.progress_path, "a", encoding="utf-8") as f:
                        f.write(f"{i}\n")
                    imported += 1
            except Exception:
                log.write(traceback.format_exc())
                raise
            finally:
                self.driver.attach_log(None)

        self.reporter.stage_complete("Import", {"Imported commits": f"{imported:,}"})
        self.reporter.success("Import complete.")
        return imported

    def load_revision(self, commit: Commit, log: TextIO):
        """Stage the content of every file of commit into the working copy"""
        added = []

        for change in commit.files:
            spec = self.ctx.files.resolve(change.file_id)
            source_path = self.cache.get_file_path(spec, change.version)
            if source_path is None:
                raise ReplayError(
                    f"File {spec}@{change.version} absent in cache. Rebuild the revision cache"
                )

            rel_path = mangle_path(relative_spec(spec), self.mangle_rules)

            if self.unimportant_only and not any(
                file_rx.search(_norm_rel(rel_path)) for file_rx, _ in self.unimportant
            ):
                continue

            log.write(f"Load: {spec}@{change.version} -> {rel_path}\n")

            dst_path = os.path.join(self.driver.working_copy, *rel_path.split("/"))
            dst_dir = os.path.dirname(dst_path)
            if not os.path.isdir(dst_dir):
                self.driver.add_directory(dst_dir)

            add_to_vcs = not os.path.exists(dst_path)
            shutil.copyfile(source_path, dst_path)
            log.write(f"Copy: {source_path} -> {dst_path}\n")

            if add_to_vcs:
                added.append(dst_path)

            if apply_censors(self.driver.working_copy, dst_path, self.censors):
                self.reporter.info(f"\tCensored: {rel_path}")

            if not add_to_vcs and self.unimportant:
                self.revert_unimportant(dst_path, rel_path)

        if added:
            self.driver.add_files(added)

    def revert_unimportant(self, path: str, rel_path: str) -> bool:
        norm = _norm_rel(rel_path)
        patterns = [line_rx for file_rx, line_rx in self.unimportant if file_rx.search(norm)]
        if not patterns:
            return False

        if not diff_is_unimportant(self.driver.get_diff(path), patterns):
            return False

        self.driver.revert(path)
        self.reporter.info(f"\tSkip unimportant: {rel_path}")
        return True
