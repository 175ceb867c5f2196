import pytest

from storycycle.vcs.commits import (
    format_conventional_commit,
    split_commit_template,
    story_commit_message,
)


def test_format_conventional_commit_sanitises_parts():
    assert format_conventional_commit("Feat", "  Add Login form. ", "1-2 User Login") == (
        "feat(1-2-user-login): add Login form"
    )


def test_format_conventional_commit_without_scope():
    assert format_conventional_commit("docs", "Update readme") == "docs: update readme"


@pytest.mark.parametrize("commit_type,description", [("", "x"), ("feat", "   ")])
def test_format_conventional_commit_rejects_empty_parts(commit_type, description):
    with pytest.raises(ValueError):
        format_conventional_commit(commit_type, description)


@pytest.mark.parametrize(
    "template,expected",
    [
        ("docs: add story file", ("docs", "add story file")),
        ("fix(scope): address code review feedback", ("fix", "address code review feedback")),
        ("chore: tidy", ("feat", "tidy")),
        ("implement story", ("feat", "implement story")),
        (None, ("feat", "update")),
    ],
)
def test_split_commit_template(template, expected):
    assert split_commit_template(template) == expected


def test_story_commit_message_scopes_to_story():
    assert story_commit_message("feat: implement story", "1-2-user-login") == (
        "feat(1-2-user-login): implement story"
    )
    assert story_commit_message("docs: mark story as done", "3-1-maps") == (
        "docs(3-1-maps): mark story as done"
    )
