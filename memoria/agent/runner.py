"""Agent runner: a tool-calling loop over the workspace's memos."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from memoria.memory.store import MemoStore
from memoria.providers.gateway import ProviderGateway, UsageContext
from memoria.queue.payloads import RespondMode
from memoria.sessions.models import StepType
from memoria.sessions.tracker import AgentSessionTracker

SEARCH_MIN_SIMILARITY = 0.3
NO_ANSWER = "I've looked through what the team has written down but have no answer to give."

_SYSTEM_PROMPTS: dict[str, str] = {
    "retrieval": (
        "You answer questions for a team using its shared knowledge. "
        "Call search_memos before answering and ground every claim in the results. "
        "If nothing relevant is found, say so plainly."
    ),
    "thinking_partner": (
        "You are a thinking partner for a team. Use search_memos to bring in what the "
        "team already knows, then help reason through the question."
    ),
}

SEARCH_MEMOS_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "search_memos",
        "description": "Search the workspace's memos (distilled team knowledge) by meaning.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
            },
            "required": ["query"],
        },
    },
}


@dataclass(frozen=True, slots=True, kw_only=True)
class AgentRequest:
    workspace_id: str
    stream_id: str
    event_id: str
    question: str
    mode: RespondMode = "retrieval"
    context_lines: tuple[str, ...] = ()


@dataclass(slots=True, kw_only=True)
class AgentAnswer:
    content: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: float = 0.0
    cited_event_ids: list[str] = field(default_factory=list)
    memo_ids: list[str] = field(default_factory=list)


class StepRecorder:
    """Writes the steps of one run into its agent session."""

    def __init__(self, tracker: AgentSessionTracker, session_id: str) -> None:
        self._tracker = tracker
        self.session_id = session_id

    def begin(
        self,
        step_type: StepType,
        content: str,
        *,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> str:
        return self._tracker.add_step(
            self.session_id,
            step_type=step_type,
            content=content,
            tool_name=tool_name,
            tool_input=tool_input,
        )

    def finish(self, step_id: str, *, result: str | None = None, failed: bool = False) -> None:
        self._tracker.complete_step(step_id, result=result, failed=failed)


class AgentRunnerPort(Protocol):
    """Invokes the agent for one question, recording its steps."""

    async def run(self, request: AgentRequest, recorder: StepRecorder) -> AgentAnswer:
        ...


class MemoSearchAgent:
    """Default runner: the chat model with a single ``search_memos`` tool."""

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        memos: MemoStore,
        max_iterations: int = 6,
        search_limit: int = 5,
    ) -> None:
        self._gateway = gateway
        self._memos = memos
        self.max_iterations = max_iterations
        self.search_limit = search_limit

    def _build_messages(self, request: AgentRequest) -> list[dict[str, Any]]:
        user_content = request.question
        if request.context_lines:
            user_content = "Conversation so far:\n" + "\n".join(request.context_lines) + "\n\n" + request.question
        return [
            {"role": "system", "content": _SYSTEM_PROMPTS.get(request.mode, _SYSTEM_PROMPTS["retrieval"])},
            {"role": "user", "content": user_content},
        ]

    async def run(self, request: AgentRequest, recorder: StepRecorder) -> AgentAnswer:
        usage = UsageContext(
            workspace_id=request.workspace_id,
            job_type="respond",
            stream_id=request.stream_id,
            event_id=request.event_id,
        )
        messages = self._build_messages(request)
        answer = AgentAnswer(content="")
        final_content: str | None = None

        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            reasoning_id = recorder.begin("reasoning", f"iteration {iteration}")
            response = await self._gateway.chat(messages, tools=[SEARCH_MEMOS_TOOL], usage=usage)
            answer.model = response.model
            answer.input_tokens += response.input_tokens
            answer.output_tokens += response.output_tokens
            answer.cost_cents += response.cost_cents
            recorder.finish(reasoning_id, result=response.content or None)

            if not response.tool_calls:
                final_content = response.content
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": response.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": tc.arguments},
                        }
                        for tc in response.tool_calls
                    ],
                }
            )
            for tool_call in response.tool_calls:
                try:
                    arguments = json.loads(tool_call.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                logger.info("tool call: {}({})", tool_call.name, tool_call.arguments[:200])
                step_id = recorder.begin(
                    "tool_call",
                    f"calling {tool_call.name}",
                    tool_name=tool_call.name,
                    tool_input=arguments if isinstance(arguments, dict) else {},
                )
                if tool_call.name == "search_memos" and isinstance(arguments, dict):
                    result = await self._search_memos(str(arguments.get("query") or request.question), answer, usage)
                    recorder.finish(step_id, result=result)
                else:
                    result = f"Error: unknown tool '{tool_call.name}'"
                    recorder.finish(step_id, result=result, failed=True)
                messages.append(
                    {"role": "tool", "tool_call_id": tool_call.id, "name": tool_call.name, "content": result}
                )

        answer.content = final_content or NO_ANSWER
        preview = answer.content[:120] + "..." if len(answer.content) > 120 else answer.content
        logger.info("agent answer for event={} after {} iteration(s): {}", request.event_id, iteration, preview)
        return answer

    async def _search_memos(self, query: str, answer: AgentAnswer, usage: UsageContext) -> str:
        embedding = await self._gateway.embed(query, usage=usage)
        hits = self._memos.search_similar(
            usage.workspace_id,
            embedding.vector,
            threshold=SEARCH_MIN_SIMILARITY,
            limit=self.search_limit,
        )
        if not hits:
            return "No matching memos."
        self._memos.log_retrieval([memo.id for memo, _ in hits])
        lines = []
        for memo, similarity in hits:
            if memo.id not in answer.memo_ids:
                answer.memo_ids.append(memo.id)
            for event_id in memo.anchor_event_ids:
                if event_id not in answer.cited_event_ids:
                    answer.cited_event_ids.append(event_id)
            topics = f" [{', '.join(memo.topics)}]" if memo.topics else ""
            lines.append(f"- ({similarity:.2f}) {memo.summary}{topics}")
        return "\n".join(lines)
