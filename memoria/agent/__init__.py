"""Agent runner and respond worker."""

from memoria.agent.responder import Responder, queue_response
from memoria.agent.runner import AgentAnswer, AgentRequest, AgentRunnerPort, MemoSearchAgent, StepRecorder

__all__ = [
    "AgentAnswer",
    "AgentRequest",
    "AgentRunnerPort",
    "MemoSearchAgent",
    "Responder",
    "StepRecorder",
    "queue_response",
]
