import subprocess
from datetime import datetime, timezone

import pytest

from vssmigrate import (
    LabelEvent,
    MigrationContext,
    ProgressReporter,
    TICKS_PER_SECOND,
    save_revisions,
    ticks_from_datetime,
)

# 2020-01-01 00:00:00 UTC
BASE_TICKS = ticks_from_datetime(datetime(2020, 1, 1, tzinfo=timezone.utc))


def at(seconds):
    """Ticks `seconds` after BASE_TICKS"""
    return BASE_TICKS + int(seconds * TICKS_PER_SECOND)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def ctx():
    return MigrationContext()


@pytest.fixture
def make_revision(ctx):
    """Factory: make_revision(spec, version, seconds, user="A", comment="")"""

    def make(spec, version, seconds, user="A", comment=""):
        return ctx.revision(spec, version, at(seconds), user, comment, physical="PHYS")

    return make


@pytest.fixture
def label():
    def make(text, seconds):
        return LabelEvent(text=text, at=at(seconds))

    return make


@pytest.fixture
def work_dir(tmp_path, ctx):
    """
    Work directory with a raw version list, a label list and an author
    mapping: two bursts by jdoe around a release label, one save by msmith.
    """
    revisions = [
        ctx.revision("$/proj/main.c", 1, at(0), "jdoe", "initial import", "AAAA"),
        ctx.revision("$/proj/util.c", 1, at(30), "jdoe", "initial import", "AAAB"),
        ctx.revision("$/proj/main.c", 2, at(4000), "msmith", "fix crash\non exit", "AAAA"),
        ctx.revision("$/proj/util.c", 2, at(9000), "jdoe", "", "AAAB"),
        ctx.revision("$/proj/util.c", 3, at(9060), "jdoe", "tidy", "AAAB"),
    ]
    save_revisions(str(tmp_path / "2-raw-versions-list.txt"), revisions, ctx)

    (tmp_path / "3-labels-list.txt").write_text(
        f"Label: {at(5000)}\t\tRELEASE 1.0\n", encoding="utf-8"
    )
    (tmp_path / "authors.txt").write_text(
        "# legacy user = git author\n"
        "JDoe = John Doe <john.doe@example.com>\n"
        "msmith = Mary Smith <mary@example.com>\n",
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args):
        subprocess.run(["git", "-C", str(repo)] + list(args), check=True, capture_output=True)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")
    run("config", "tag.gpgsign", "false")

    return str(repo)
