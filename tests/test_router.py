import json
from types import SimpleNamespace

import litellm
import pytest

from looper.config_loader import OracleConfig
from looper.router import (
    FinalAnswer,
    MissingCredentialsError,
    OracleError,
    OracleTimeout,
    Router,
    ToolRequest,
    Unfixable,
    _build_kwargs,
    parse_response,
)
from looper.state import Transcript


def _response(content=None, tool_calls=None, usage=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


def _call(name, arguments, call_id="call_1"):
    args = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=args))


def test_first_tool_call_wins():
    response = _response(
        content="Reading first.",
        tool_calls=[_call("read_file", {"path": "a.ts"}), _call("write_file", {"path": "a.ts"}, "call_2")],
    )

    decision = parse_response(response)

    assert isinstance(decision, ToolRequest)
    assert decision.name == "read_file"
    assert decision.call_id == "call_1"
    assert decision.arguments == {"path": "a.ts"}
    assert decision.text == "Reading first."


def test_bad_json_arguments_are_kept_for_the_loop_to_reject():
    decision = parse_response(_response(tool_calls=[_call("write_file", "{not json")]))
    assert decision.arguments == {"_unparsed": "{not json"}


def test_cannot_fix_tool_and_prefix():
    assert parse_response(_response(tool_calls=[_call("cannot_fix", {"reason": "generated file"})])) == Unfixable(
        reason="generated file"
    )
    assert parse_response(_response(content="CANNOT_FIX: needs a schema change")) == Unfixable(
        reason="needs a schema change"
    )


def test_plain_text_is_a_final_answer():
    assert parse_response(_response(content="  Done.  ")) == FinalAnswer(text="Done.")
    assert parse_response(_response(content=None)) == FinalAnswer(text="")


def test_build_kwargs_respects_model_quirks():
    tools = [{"type": "function", "function": {"name": "read_file"}}]

    kwargs = _build_kwargs(OracleConfig(model="anthropic/claude-sonnet-4-20250514"), [], tools)
    assert kwargs["temperature"] == 0.0
    assert kwargs["tool_choice"] == "auto"

    assert "temperature" not in _build_kwargs(OracleConfig(model="openai/o3-mini"), [], [])
    assert "temperature" not in _build_kwargs(OracleConfig(model="gpt-5"), [], [])
    assert "tools" not in _build_kwargs(OracleConfig(), [], [])


@pytest.fixture
def transcript():
    t = Transcript()
    t.append("system", "fix it")
    t.append("user", "src/a.ts:1: boom")
    return t


def test_decide_records_usage(monkeypatch, transcript):
    usage = SimpleNamespace(prompt_tokens=100, completion_tokens=20, total_tokens=120)
    seen = {}

    def fake_completion(**kwargs):
        seen.update(kwargs)
        return _response(tool_calls=[_call("read_file", {"path": "src/a.ts"})], usage=usage)

    monkeypatch.setattr(litellm, "completion", fake_completion)
    monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.0025)
    router = Router(OracleConfig(retries=1))

    decision = router.decide(transcript, tools=[])

    assert isinstance(decision, ToolRequest)
    assert seen["messages"][0] == {"role": "system", "content": "fix it"}
    assert router.usage.summary() == {"total_tokens": 120, "estimated_cost": 0.0025, "call_count": 1}


def test_unknown_cost_does_not_fail_the_call(monkeypatch, transcript):
    def no_cost(completion_response):
        raise Exception("model isn't mapped yet")

    monkeypatch.setattr(litellm, "completion", lambda **kw: _response(content="ok"))
    monkeypatch.setattr(litellm, "completion_cost", no_cost)

    router = Router(OracleConfig(retries=1))
    assert router.decide(transcript, tools=[]) == FinalAnswer(text="ok")
    assert router.usage.summary()["estimated_cost"] == 0.0


def _raiser(exc):
    def complete(**kwargs):
        raise exc
    return complete


def test_timeout_maps_to_oracle_timeout(monkeypatch, transcript):
    exc = litellm.exceptions.Timeout(message="slow", model="gpt-4o", llm_provider="openai")
    monkeypatch.setattr(litellm, "completion", _raiser(exc))

    with pytest.raises(OracleTimeout):
        Router(OracleConfig(retries=1)).decide(transcript, tools=[])


def test_auth_failure_maps_to_missing_credentials(monkeypatch, transcript):
    exc = litellm.exceptions.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4o")
    monkeypatch.setattr(litellm, "completion", _raiser(exc))

    with pytest.raises(MissingCredentialsError):
        Router(OracleConfig(retries=1)).decide(transcript, tools=[])


def test_transient_errors_are_retried(monkeypatch, transcript):
    calls = []

    def flaky(**kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise litellm.exceptions.APIConnectionError(message="reset", llm_provider="openai", model="gpt-4o")
        return _response(content="ok")

    monkeypatch.setattr(litellm, "completion", flaky)
    monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.0)

    decision = Router(OracleConfig(retries=2)).decide(transcript, tools=[])

    assert decision == FinalAnswer(text="ok")
    assert len(calls) == 2


def test_exhausted_retries_raise_oracle_error(monkeypatch, transcript):
    exc = litellm.exceptions.APIConnectionError(message="reset", llm_provider="openai", model="gpt-4o")
    monkeypatch.setattr(litellm, "completion", _raiser(exc))

    with pytest.raises(OracleError):
        Router(OracleConfig(retries=1)).decide(transcript, tools=[])
