import threading

import pytest

from vssmigrate import (
    AuthorMappingError,
    StopRequested,
    UnmappedAuthorsError,
    load_user_mappings,
    report_unmapped,
    resolve_authors,
)


@pytest.fixture
def write_map(tmp_path):
    counter = {"n": 0}

    def write(text):
        counter["n"] += 1
        path = tmp_path / f"authors{counter['n']}.txt"
        path.write_text(text, encoding="utf-8")
        return str(path)

    return write


def test_load_user_mappings_basic(write_map):
    path = write_map(
        "# comment line\n"
        "\n"
        "JDoe = John Doe <john@example.com>\n"
        "  msmith=Mary Smith <mary@example.com>  \n"
        "weird = a = b\n"
    )
    mapping = load_user_mappings([path])
    assert mapping == {
        "jdoe": "John Doe <john@example.com>",
        "msmith": "Mary Smith <mary@example.com>",
        "weird": "a = b",
    }


def test_later_files_override_earlier(write_map):
    first = write_map("jdoe = Old Name <old@example.com>\nmsmith = Mary <m@example.com>\n")
    second = write_map("JDOE = New Name <new@example.com>\n")
    mapping = load_user_mappings([first, second])
    assert mapping["jdoe"] == "New Name <new@example.com>"
    assert mapping["msmith"] == "Mary <m@example.com>"


def test_duplicate_within_one_file_is_rejected(write_map):
    path = write_map("jdoe = A <a@x>\nJDoe = B <b@x>\n")
    with pytest.raises(AuthorMappingError, match="Duplicate entry: jdoe"):
        load_user_mappings([path])


def test_line_without_separator_is_rejected(write_map):
    path = write_map("jdoe John Doe\n")
    with pytest.raises(AuthorMappingError, match="Invalid user mapping file"):
        load_user_mappings([path])


def test_resolve_authors_rewrites_mapped_users(ctx, write_map):
    path = write_map("jdoe = John Doe <john@example.com>\n")
    revisions = [
        ctx.revision("$/a", 1, 0, "JDoe"),
        ctx.revision("$/b", 1, 0, "ghost"),
    ]
    unmapped = resolve_authors(revisions, [path], ctx)

    assert unmapped == {"ghost"}
    assert ctx.users.resolve(revisions[0].user_id) == "John Doe <john@example.com>"
    assert ctx.users.resolve(revisions[0].original_user_id) == "JDoe"
    assert ctx.users.resolve(revisions[1].user_id) == "ghost"
    assert revisions[1].original_user_id is None


def test_resolve_authors_without_files_reports_everyone(ctx):
    revisions = [ctx.revision("$/a", 1, 0, "Alice"), ctx.revision("$/b", 1, 0, "bob")]
    assert resolve_authors(revisions, [], ctx) == {"alice", "bob"}


def test_resolve_authors_honours_cancellation(ctx):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(StopRequested):
        resolve_authors([ctx.revision("$/a", 1, 0, "x")], [], ctx, cancel_event=cancel)


def test_report_unmapped_prints_fill_in_lines(capsys, quiet_reporter):
    report_unmapped({"zed", "amy"}, strict=False, reporter=quiet_reporter)
    out = capsys.readouterr().out
    assert out.index("amy = ?") < out.index("zed = ?")


def test_report_unmapped_strict_raises(quiet_reporter):
    with pytest.raises(UnmappedAuthorsError) as excinfo:
        report_unmapped({"amy"}, strict=True, reporter=quiet_reporter)
    assert excinfo.value.unmapped == {"amy"}
    assert "1 legacy user(s) not mapped" in str(excinfo.value)


def test_report_unmapped_nothing_to_do(capsys):
    report_unmapped(set(), strict=True)
    assert capsys.readouterr().out == ""
