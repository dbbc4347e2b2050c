import pytest

from gateci.errors import DefinitionError
from gateci.model import EventKind, RunContext
from gateci.triggers import (
    TriggerRule,
    action,
    always,
    branch,
    evaluate,
    event,
    never,
    not_,
    parse_condition,
    tag,
    triggers,
)

PUSH_MASTER = RunContext(event=EventKind.PUSH, ref="refs/heads/master")
RELEASE = RunContext(event=EventKind.RELEASE, ref="refs/tags/v1.2.0", action="published")


def test_helpers_compose():
    cond = event("release") & action("published")
    assert evaluate(cond, RELEASE)
    assert not evaluate(cond, PUSH_MASTER)

    assert evaluate(branch("master") | tag("v*"), PUSH_MASTER)
    assert evaluate(branch("master") | tag("v*"), RELEASE)
    assert evaluate(~event("push"), RELEASE)
    assert evaluate(not_(branch("release/*")), PUSH_MASTER)


def test_none_means_always():
    assert evaluate(None, PUSH_MASTER)
    assert evaluate(always(), PUSH_MASTER)
    assert not evaluate(never(), PUSH_MASTER)


def test_context_branch_and_tag():
    assert PUSH_MASTER.branch == "master"
    assert PUSH_MASTER.tag == ""
    assert RELEASE.tag == "v1.2.0"
    assert RELEASE.branch == ""
    assert RunContext(ref="feature/x").branch == "feature/x"


@pytest.mark.parametrize(
    "text,ctx,expected",
    [
        ("event == 'release' && action == 'published'", RELEASE, True),
        ("event == 'release' && action == 'published'", PUSH_MASTER, False),
        ("github.event_name == 'release' && github.event.action == 'published'", RELEASE, True),
        ("branch matches 'mas*' || event == 'manual'", PUSH_MASTER, True),
        ("!(branch == 'master')", PUSH_MASTER, False),
        ("event != 'push'", RELEASE, True),
        ("event == 'workflow_dispatch'", RunContext(), True),
        ("true && !false", PUSH_MASTER, True),
        ("(event == 'push' || event == 'release') && tag matches 'v1.*'", RELEASE, True),
    ],
)
def test_parse_and_evaluate(text, ctx, expected):
    assert evaluate(parse_condition(text), ctx) is expected


def test_parsed_condition_equals_helper_form():
    assert parse_condition("event == 'release'") == event(EventKind.RELEASE)
    assert str(event("push") & branch("main")) == "(event == 'push') && (branch == 'main')"


@pytest.mark.parametrize(
    "text",
    ["", "event ==", "colour == 'red'", "event == 'tuesday'", "event == release", "(event == 'push'", "event == 'push' )"],
)
def test_parse_errors(text):
    with pytest.raises(DefinitionError):
        parse_condition(text)


def test_trigger_rules_match_any():
    on = triggers(
        TriggerRule(EventKind.PUSH, branches=("master",)),
        TriggerRule(EventKind.PULL_REQUEST, actions=("opened", "synchronize", "reopened")),
        TriggerRule(EventKind.RELEASE, actions=("published",)),
        TriggerRule(EventKind.MANUAL),
    )
    assert evaluate(on, PUSH_MASTER)
    assert evaluate(on, RELEASE)
    assert evaluate(on, RunContext(event=EventKind.MANUAL))
    assert evaluate(on, RunContext(event=EventKind.PULL_REQUEST, action="opened"))
    assert not evaluate(on, RunContext(event=EventKind.PULL_REQUEST, action="closed"))
    assert not evaluate(on, RunContext(event=EventKind.PUSH, ref="refs/heads/dev"))
    assert not evaluate(on, RunContext(event=EventKind.RELEASE, action="created"))


def test_evaluate_is_pure():
    cond = parse_condition("branch == 'master'")
    assert [evaluate(cond, PUSH_MASTER) for _ in range(3)] == [True, True, True]
    assert not evaluate(cond, RELEASE)
