"""EchoMessageAdapter 单元测试"""

from agentmesh.provider.echo_adapter import EchoMessageAdapter


async def _collect(agen) -> list:
    return [chunk async for chunk in agen]


class TestEchoMessageAdapter:
    async def test_streams_echo_word_by_word(self, sample_messages):
        chunks = await _collect(EchoMessageAdapter().stream(sample_messages))

        tokens = [c.text for c in chunks if c.type == "token"]
        assert tokens == ["Echo: ", "Hello, ", "world!"]
        assert "".join(tokens) == "Echo: Hello, world!"

    async def test_done_chunk_is_last(self, sample_messages):
        chunks = await _collect(EchoMessageAdapter().stream(sample_messages, model_alias="main"))

        done = chunks[-1]
        assert done.type == "done"
        assert done.result.content == "Echo: Hello, world!"
        assert done.result.provider == "echo"
        assert done.result.model_alias == "main"
        assert done.result.tool_calls == []
        assert done.result.cost_usd == 0.0

    async def test_uses_last_user_message(self, multi_turn_messages):
        chunks = await _collect(EchoMessageAdapter().stream(multi_turn_messages))
        assert chunks[-1].result.content == "Echo: Tell me more."

    async def test_token_usage_estimated(self, sample_messages):
        chunks = await _collect(EchoMessageAdapter().stream(sample_messages))
        usage = chunks[-1].result.token_usage
        assert usage.prompt_tokens == 2
        assert usage.completion_tokens == 3
        assert usage.total_tokens == 5

    async def test_empty_messages(self):
        chunks = await _collect(EchoMessageAdapter().stream([]))
        assert chunks[-1].result.content == "Echo: (empty)"

    async def test_tools_ignored(self, sample_messages):
        tools = [{"type": "function", "function": {"name": "lookup"}}]
        chunks = await _collect(EchoMessageAdapter().stream(sample_messages, tools=tools))
        assert chunks[-1].result.tool_calls == []
