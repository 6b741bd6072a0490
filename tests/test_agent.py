import pytest

from memoria.agent.runner import NO_ANSWER, AgentRequest, MemoSearchAgent, StepRecorder
from memoria.memory.models import NewMemo
from memoria.providers.remote import ToolCallRequest


@pytest.fixture
def agent(gateway, memos) -> MemoSearchAgent:
    return MemoSearchAgent(gateway=gateway, memos=memos, max_iterations=3)


@pytest.fixture
def recorder(tracker) -> StepRecorder:
    session, _ = tracker.create_or_resume(workspace_id="ws1", stream_id="c1", triggering_event_id="evt_q")
    return StepRecorder(tracker, session.id)


def _request(**kwargs) -> AgentRequest:
    values = dict(workspace_id="ws1", stream_id="c1", event_id="evt_q", question="How do deploys work?")
    values.update(kwargs)
    return AgentRequest(**values)


def _search_call(query: str = "deploys", call_id: str = "call_1") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name="search_memos", arguments=f'{{"query": "{query}"}}')


async def test_search_then_answer(agent, recorder, tracker, memos, remote) -> None:
    memo = memos.create(
        NewMemo(
            workspace_id="ws1",
            summary="Deploys go through staging",
            topics=("deploy",),
            anchor_event_ids=("evt_src",),
            confidence=0.8,
            source="system",
        ),
        embedding=[1.0, 0.0, 0.0, 0.0],
        embedding_model="test",
    )
    remote.reply("", tool_calls=[_search_call()])
    remote.reply("Every merge goes through staging first.")

    answer = await agent.run(_request(context_lines=("bob: anyone?",)), recorder)

    assert answer.content == "Every merge goes through staging first."
    assert answer.cited_event_ids == ["evt_src"]
    assert answer.memo_ids == [memo.id]
    assert answer.input_tokens == 200
    assert memos.get(memo.id).retrieval_count == 1

    first_call = remote.calls[0]["messages"]
    assert "Conversation so far:\nbob: anyone?" in first_call[1]["content"]
    tool_message = remote.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"
    assert "Deploys go through staging [deploy]" in tool_message["content"]

    steps = tracker.get_session(recorder.session_id).steps
    assert [s.step_type for s in steps] == ["reasoning", "tool_call", "reasoning"]
    assert steps[1].tool_input == {"query": "deploys"}
    assert all(s.status == "completed" for s in steps)


async def test_search_without_hits(agent, recorder, remote) -> None:
    remote.reply("", tool_calls=[_search_call()])
    remote.reply("Nothing written down yet.")
    answer = await agent.run(_request(), recorder)
    assert answer.cited_event_ids == []
    assert remote.calls[1]["messages"][-1]["content"] == "No matching memos."


async def test_unknown_tool_is_a_failed_step(agent, recorder, tracker, remote) -> None:
    remote.reply("", tool_calls=[ToolCallRequest(id="c1", name="delete_everything", arguments="{}")])
    remote.reply("I can only search memos.")
    answer = await agent.run(_request(), recorder)
    assert answer.content == "I can only search memos."
    tool_step = tracker.get_session(recorder.session_id).steps[1]
    assert tool_step.status == "failed"
    assert "unknown tool" in tool_step.tool_result


async def test_iteration_limit_yields_fallback_answer(agent, recorder, remote) -> None:
    for i in range(3):
        remote.reply("", tool_calls=[_search_call(call_id=f"call_{i}")])
    answer = await agent.run(_request(), recorder)
    assert answer.content == NO_ANSWER
    assert len(remote.calls) == 3


async def test_thinking_partner_prompt(agent, recorder, remote) -> None:
    remote.reply("Let's reason about it.")
    await agent.run(_request(mode="thinking_partner"), recorder)
    assert "thinking partner" in remote.calls[0]["messages"][0]["content"]
