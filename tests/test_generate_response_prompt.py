from unittest.mock import Mock, patch

import cli


class _FakeMessage:
    def __init__(self, content: str = "fake response about peanuts"):
        self.content = content


class _FakeChoice:
    def __init__(self, content: str = "fake response about peanuts"):
        self.message = _FakeMessage(content)


class _FakeResponse:
    def __init__(self, content: str = "fake response about peanuts"):
        self.choices = [_FakeChoice(content)]


class _FakeChatCompletions:
    def __init__(self, calls: dict):
        self._calls = calls

    def create(self, **kwargs):  # matches OpenAI chat.completions.create signature style
        self._calls["kwargs"] = kwargs

        # Echo something from the system prompt so the test can tell it got through.
        system_content = kwargs["messages"][0]["content"]
        if "allergic to peanuts" in system_content:
            content = "Skip the satay, you're allergic to peanuts."
        else:
            content = "test fallback response"

        return _FakeResponse(content)


class _FakeChat:
    def __init__(self, calls: dict):
        self.completions = _FakeChatCompletions(calls)


class _FakeClient:
    def __init__(self, calls: dict):
        self.chat = _FakeChat(calls)


def test_generate_response_passes_system_prompt_and_history(monkeypatch):
    """The memory-aware system prompt goes first, then recent history, then the query.

    We don't hit the real OpenAI API here; instead, we patch cli.get_client() to return
    a fake client whose chat.completions.create method just records the call.
    """

    calls: dict = {}

    monkeypatch.delenv("AI_MEMORY_OFFLINE", raising=False)
    monkeypatch.delenv("AI_MODEL", raising=False)
    monkeypatch.delenv("AI_TEMPERATURE", raising=False)
    monkeypatch.setenv("AI_BACKEND", "openai")
    monkeypatch.setattr(cli, "get_client", lambda: _FakeClient(calls))

    system_prompt = (
        "You are a helpful AI wellness coach. Consider this context about the user:\n\n"
        "- [Important] I'm allergic to peanuts"
    )
    history = [{"role": "user", "content": f"message {i}"} for i in range(8)]
    query = "What should I order at the Thai place?"

    result = cli.generate_response(query, system_prompt, history)

    assert "allergic to peanuts" in result

    kwargs = calls["kwargs"]
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["temperature"] == 0.2

    messages = kwargs["messages"]
    assert messages[0] == {"role": "system", "content": system_prompt}
    # only the last six history messages are replayed
    assert [m["content"] for m in messages[1:-1]] == [f"message {i}" for i in range(2, 8)]
    assert messages[-1] == {"role": "user", "content": query}


def test_generate_response_offline_mode(monkeypatch):
    monkeypatch.setenv("AI_MEMORY_OFFLINE", "1")
    result = cli.generate_response("hello", "You are a helpful AI wellness coach.")
    assert result.startswith("[offline-test]")


def test_generate_response_ollama_backend(monkeypatch):
    monkeypatch.delenv("AI_MEMORY_OFFLINE", raising=False)
    monkeypatch.setenv("AI_BACKEND", "ollama")
    monkeypatch.setenv("OLLAMA_URL", "http://ollama:11434")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3.2:3b")

    resp = Mock()
    resp.raise_for_status = Mock()
    resp.json.return_value = {"message": {"content": "Try the green curry without peanuts."}}
    with patch("requests.post", return_value=resp) as mock_post:
        result = cli.generate_response("What should I order?", "system prompt")

    assert result == "Try the green curry without peanuts."
    args, kwargs = mock_post.call_args
    assert args[0] == "http://ollama:11434/api/chat"
    assert kwargs["json"]["model"] == "llama3.2:3b"
    assert kwargs["json"]["messages"][0] == {"role": "system", "content": "system prompt"}


def test_generate_response_reports_llm_errors(monkeypatch):
    monkeypatch.delenv("AI_MEMORY_OFFLINE", raising=False)
    monkeypatch.setenv("AI_BACKEND", "openai")

    def broken_client():
        raise RuntimeError("OPENAI_API_KEY must be set or AI_MEMORY_OFFLINE enabled")

    monkeypatch.setattr(cli, "get_client", broken_client)

    assert cli.generate_response("hi", "system").startswith("Error calling LLM:")
