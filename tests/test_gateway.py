import json

import httpx
import pytest

from memoria.errors import ProviderError, ProviderUnavailableError
from memoria.providers.gateway import UsageContext
from memoria.providers.local import OllamaClient
from memoria.providers.parsing import clean_single_line, extract_json_payload, parse_tag_list

USAGE = UsageContext(workspace_id="ws1", job_type="test")


def _ollama(handler) -> OllamaClient:
    return OllamaClient("http://ollama.test", transport=httpx.MockTransport(handler))


async def test_ollama_generate_reads_counts() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"response": " YES \n", "prompt_eval_count": 42, "eval_count": 1})

    client = _ollama(handler)
    generation = await client.generate("is this knowledge?", model="granite4:350m", max_tokens=5)
    assert generation.text == "YES"
    assert generation.input_tokens == 42
    assert generation.output_tokens == 1
    assert seen[0]["options"]["num_predict"] == 5
    assert seen[0]["stream"] is False


async def test_ollama_availability_is_cached() -> None:
    probes = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal probes
        probes += 1
        return httpx.Response(200, json={"models": []})

    client = _ollama(handler)
    assert await client.is_available()
    assert await client.is_available()
    assert probes == 1


async def test_ollama_error_marks_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        return httpx.Response(500, text="model not loaded")

    client = _ollama(handler)
    assert await client.is_available()
    with pytest.raises(ProviderUnavailableError):
        await client.embed("hello", model="nomic-embed-text")
    assert await client.is_available() is False


async def test_disabled_ollama_is_never_probed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("should not be called")

    client = OllamaClient("http://ollama.test", enabled=False, transport=httpx.MockTransport(handler))
    assert await client.is_available() is False
    with pytest.raises(ProviderUnavailableError):
        await client.generate("hi", model="m")


async def test_embed_prefers_local(gateway, local, remote, ledger) -> None:
    result = await gateway.embed("release notes for March", usage=USAGE)
    assert result.tier == "local"
    assert result.model == "nomic-embed-text"
    assert remote.embed_calls == []
    [row] = ledger.get_usage_stats("ws1")
    assert row.model == "nomic-embed-text"
    assert row.cost_cents == 0.0


async def test_embed_falls_back_to_remote(gateway, local, remote, telemetry) -> None:
    local.available = False
    result = await gateway.embed("release notes", usage=USAGE)
    assert result.tier == "remote"
    assert result.vector == [0.0, 1.0, 0.0, 0.0]
    assert telemetry.get_counter(
        "provider_requests_total", labels=(("capability", "embed"), ("tier", "remote"))
    ) == 1


async def test_embed_fails_when_every_backend_fails(gateway, local, remote) -> None:
    local.available = False
    remote.fail_embeddings = True
    with pytest.raises(ProviderUnavailableError):
        await gateway.embed("release notes", usage=USAGE)


async def test_embed_batch_is_chunked(gateway, local, remote) -> None:
    local.available = False
    texts = [f"message {i}" for i in range(150)]
    results = await gateway.embed_batch(texts, usage=USAGE)
    assert len(results) == 150
    assert [len(call) for call in remote.embed_calls] == [100, 50]


@pytest.mark.parametrize(
    ("verdict", "is_knowledge", "confident"),
    [("YES", True, True), ("no, just chatter", False, True), ("Maybe?", False, False)],
)
async def test_local_classification(gateway, local, verdict, is_knowledge, confident) -> None:
    local.verdict = verdict
    result = await gateway.classify("some text", usage=USAGE)
    assert (result.is_knowledge, result.confident) == (is_knowledge, confident)


async def test_unavailable_local_classifier_is_unsure(gateway, local) -> None:
    local.available = False
    result = await gateway.classify("some text", usage=USAGE)
    assert result.confident is False


async def test_escalation_parses_fenced_json(gateway, remote, ledger) -> None:
    remote.reply('Sure!\n```json\n{"isKnowledge": true, "confidence": 1.4, "suggestedTitle": "Deploys"}\n```')
    result = await gateway.classify_escalate("text", context="earlier", usage=USAGE)
    assert result.is_knowledge
    assert result.confidence == 1.0
    assert result.suggested_title == "Deploys"
    assert "Context:\nearlier" in remote.calls[0]["messages"][1]["content"]
    assert ledger.get_monthly_usage("ws1").total_cost_cents > 0


async def test_escalation_provider_failure_raises(gateway, remote) -> None:
    remote.completions.append(ProviderError("rate limited"))
    with pytest.raises(ProviderUnavailableError):
        await gateway.classify_escalate("text", usage=USAGE)


async def test_summary_rejects_generic_titles(gateway, local) -> None:
    local.summary = '"General Discussion"'
    assert await gateway.generate_summary("text", usage=USAGE) is None
    local.summary = "**Staging deploys need a green canary.**"
    assert await gateway.generate_summary("text", usage=USAGE) == "Staging deploys need a green canary"


async def test_summary_falls_back_to_remote(gateway, local, remote) -> None:
    local.available = False
    remote.reply("Rotating API keys")
    assert await gateway.generate_summary("text", usage=USAGE) == "Rotating API keys"


async def test_text_helpers_return_none_when_all_backends_fail(gateway, local, remote) -> None:
    local.available = False
    assert await gateway.generate_summary("text", usage=USAGE) is None
    assert await gateway.suggest_tags("text", [], usage=USAGE) is None
    assert await gateway.classify_category("text", usage=USAGE) is None


async def test_tags_put_known_vocabulary_first(gateway, local) -> None:
    local.tags = '["kubernetes", "Deploy", "ci pipeline"]'
    tags = await gateway.suggest_tags("text", ["deploy", "ci-pipeline"], usage=USAGE)
    assert tags == ["deploy", "ci-pipeline", "kubernetes"]


async def test_category_is_matched_loosely(gateway, local) -> None:
    local.category = "Procedure."
    assert await gateway.classify_category("text", usage=USAGE) == "procedure"


async def test_chat_reports_cost(gateway, remote, ledger) -> None:
    remote.reply("Here you go")
    result = await gateway.chat([{"role": "user", "content": "hi"}], usage=USAGE)
    assert result.content == "Here you go"
    assert result.model == "anthropic/claude-sonnet-4-5"
    assert result.cost_cents == pytest.approx(0.06, abs=1e-3)
    assert remote.calls[0]["model"] == "anthropic/claude-sonnet-4-5"


def test_parsing_helpers() -> None:
    assert extract_json_payload('noise {"a": 1} trailing') == {"a": 1}
    assert extract_json_payload("no json here") is None
    assert parse_tag_list("Deploy, CI, deploy, x, on-call") == ["deploy", "ci", "on-call"]
    assert clean_single_line('\n  "Quoted title"\nsecond', max_chars=6) == "Quoted"
