from datetime import UTC, datetime

from memoria.core.models import ChatMessage
from memoria.pipeline.scoring import score_message


def _message(content: str, **kwargs) -> ChatMessage:
    return ChatMessage(
        event_id="e1",
        text_message_id="m1",
        workspace_id="ws1",
        stream_id="s1",
        content=content,
        created_at=datetime(2026, 1, 5, tzinfo=UTC),
        **kwargs,
    )


LONG_EXPLANATION = (
    "Here's how the deploy pipeline works now. Basically every merge to main builds an image, "
    "then staging picks it up automatically.\n"
    "- run `make release` to tag\n"
    "- watch https://ci.example.com for the promotion\n"
    "- ping #ops if the canary fails\n"
    "This means nobody needs to ssh into the boxes anymore, which was the main pain point "
    "we kept hitting during the last few incidents."
)


def test_agent_messages_never_qualify() -> None:
    result = score_message(_message(LONG_EXPLANATION, agent_id="ariadne"))
    assert result.should_create_memo is False
    assert result.reasons == ["ai_generated"]


def test_trivial_message_scores_zero() -> None:
    result = score_message(_message("thanks!"))
    assert result.score == 0
    assert result.should_create_memo is False


def test_rich_explanation_is_memo_worthy() -> None:
    result = score_message(_message(LONG_EXPLANATION, reaction_count=2))
    assert result.score >= 50
    assert result.should_create_memo
    assert 0.5 <= result.confidence <= 0.9
    assert "explanation" in result.reasons


def test_announcement_threshold() -> None:
    content = (
        "Heads up: we just shipped the new billing export, it is now available for every workspace "
        "and the old CSV endpoint will keep working until the end of the quarter."
    )
    result = score_message(_message(content))
    assert 30 <= result.score < 50
    assert result.should_create_memo
    assert result.confidence == 0.7
    assert "announcement_threshold" in result.reasons


def test_short_question_is_penalized() -> None:
    result = score_message(_message("where is the runbook?"))
    assert result.score == 0
    assert not result.should_create_memo


def test_score_is_clamped() -> None:
    result = score_message(_message(LONG_EXPLANATION * 3, reaction_count=50, reply_count=50))
    assert result.score <= 100
