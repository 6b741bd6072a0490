import pytest

from memoria.pipeline.signals import extract_signals, score_content, structural_score

EXPLANATION = (
    "Here's how the release works: we cut a branch, CI runs the full suite, "
    "and the deploy bot promotes the build once staging is green."
)


def test_score_is_deterministic() -> None:
    assert score_content(EXPLANATION) == score_content(EXPLANATION)


@pytest.mark.parametrize(
    "content",
    [
        "ok",
        EXPLANATION,
        "- one\n- two\n- three\n- four",
        "see https://example.com for the `config` flag",
    ],
)
def test_adding_code_block_never_lowers_score(content: str) -> None:
    with_code = content + "\n```\nmake deploy\n```"
    assert score_content(with_code) >= score_content(content)


def test_structural_signals() -> None:
    signals = extract_signals("Steps:\n1. run `make`\n2. open https://ci.example.com\n```\nmake\n```")
    assert signals.has_code_block
    assert signals.has_inline_code
    assert signals.has_list_items
    assert signals.has_links
    assert signals.line_count == 6


def test_content_type_hints() -> None:
    assert extract_signals("We've decided to go with Postgres.").is_decision
    assert extract_signals("FYI: the API moved").is_announcement
    assert extract_signals(EXPLANATION).is_explanation
    assert extract_signals("how to rotate the keys").is_how_to


@pytest.mark.parametrize("content", ["thanks!", "LGTM", "+1", "👍", "ok.", "   "])
def test_trivial_messages(content: str) -> None:
    assert extract_signals(content).is_trivial


def test_short_question_flag() -> None:
    assert extract_signals("Anyone know where the runbook is?").is_question
    assert not extract_signals("The runbook lives in the wiki.").is_question


def test_structural_score_weights() -> None:
    signals = extract_signals("plain words")
    assert structural_score(signals) == 0
    assert structural_score(signals, reaction_count=3) == 1
    assert structural_score(signals, reaction_count=5) == 2
    assert score_content(EXPLANATION) >= 3
