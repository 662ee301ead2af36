import pytest
from pydantic import ValidationError

from umf.chatml import ChatMLFormatter, ChatMLMessage
from umf.message import (
    Message,
    MessageRole,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UrlImageSource,
    ImageBlock,
)
from umf.streaming import ToolCall


# ---------------------------------------------------------------------------
# ChatMLMessage
# ---------------------------------------------------------------------------

class TestChatMLMessage:
    def test_to_dict_omits_unset_fields(self):
        assert ChatMLMessage.user("hi").to_dict() == {"role": "user", "content": "hi"}

    def test_tool_message_dict(self):
        msg = ChatMLMessage.tool("72F", "call_1", "weather")
        assert msg.to_dict() == {
            "role": "tool",
            "content": "72F",
            "name": "weather",
            "tool_call_id": "call_1",
        }

    def test_tool_calls_use_openai_shape(self):
        msg = ChatMLMessage.assistant_with_tool_calls(
            "", [ToolCall(id="call_abc", name="greet", arguments='{"name": "world"}')],
        )
        assert msg.to_dict()["tool_calls"] == [
            {
                "id": "call_abc",
                "type": "function",
                "function": {"name": "greet", "arguments": '{"name": "world"}'},
            }
        ]

    def test_openai_shape_parses_back(self):
        msg = ChatMLMessage.assistant_with_tool_calls(
            "", [ToolCall(id="c1", name="f", arguments="{}")],
        )
        restored = ChatMLMessage.model_validate(msg.to_dict())
        assert restored.tool_calls == [ToolCall(id="c1", name="f", arguments="{}")]

    def test_chatml_string(self):
        assert ChatMLMessage.system("Be brief.", "sys").to_chatml_string() == (
            "<|im_start|>system name=sys\nBe brief.\n<|im_end|>"
        )
        assert ChatMLMessage.user("hi").to_chatml_string() == (
            "<|im_start|>user\nhi\n<|im_end|>"
        )

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError):
            ChatMLMessage.model_validate({"role": "function", "content": "x"})


class TestFromMessage:
    def test_text_message(self):
        chatml = ChatMLMessage.from_message(Message.user("hello"))
        assert chatml == ChatMLMessage.user("hello")

    def test_blocks_split_into_content_and_tool_calls(self):
        msg = Message.assistant_with_tools("Let me check", [
            ToolUseBlock.of("call_1", "search", {"q": "rust"}),
        ])
        chatml = ChatMLMessage.from_message(msg)

        assert chatml.content == "Let me check"
        assert chatml.tool_calls == [
            ToolCall(id="call_1", name="search", arguments='{"q":"rust"}'),
        ]

    def test_non_ascii_input_kept_as_utf8(self):
        msg = Message.assistant_with_tools("", [
            ToolUseBlock.of("call_1", "weather", {"city": "Zürich"}),
        ])
        chatml = ChatMLMessage.from_message(msg)
        assert chatml.tool_calls[0].arguments == '{"city":"Zürich"}'

    def test_blocks_without_tool_use_have_no_tool_calls(self):
        msg = Message(role=MessageRole.USER, content=[
            TextBlock.of("look"),
            ImageBlock.of(UrlImageSource(url="https://example.com/a.png")),
            TextBlock.of("here"),
        ])
        chatml = ChatMLMessage.from_message(msg)

        assert chatml.content == "look\nhere"
        assert chatml.tool_calls is None

    def test_tool_message_keeps_linkage(self):
        chatml = ChatMLMessage.from_message(
            Message.tool_result("call_1", "search", "found it"),
        )
        assert chatml == ChatMLMessage.tool("found it", "call_1", "search")

    def test_tool_message_blocks_use_text_only(self):
        msg = Message.tool([TextBlock.of("a"), ToolResultBlock.of("c", "skipped"), TextBlock.of("b")])
        assert ChatMLMessage.from_message(msg).content == "a\nb"


class TestToMessage:
    def test_plain_text(self):
        msg = ChatMLMessage.assistant("hi").to_message()
        assert msg == Message.assistant("hi")

    def test_tool_result(self):
        msg = ChatMLMessage.tool("out", "call_7", "run").to_message()
        assert msg == Message.tool_result("call_7", "run", "out")

    def test_tool_calls_become_blocks(self):
        chatml = ChatMLMessage.assistant_with_tool_calls("Checking", [
            ToolCall(id="c1", name="f", arguments='{"x": 1}'),
            ToolCall(id="c2", name="g", arguments="not json"),
        ])
        blocks = chatml.to_message().blocks()

        assert blocks == [
            TextBlock.of("Checking"),
            ToolUseBlock.of("c1", "f", {"x": 1}),
            ToolUseBlock.of("c2", "g", None),
        ]

    def test_openai_call_without_id(self):
        chatml = ChatMLMessage.model_validate({
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "", "type": "function", "function": {"name": "f", "arguments": "{}"}},
            ],
        })
        assert chatml.to_message().blocks()[0].as_tool_use() == ("", "f", {})

    def test_empty_content_skips_text_block(self):
        chatml = ChatMLMessage.assistant_with_tool_calls(
            "", [ToolCall(id="c1", name="f", arguments="{}")],
        )
        assert [b.type for b in chatml.to_message().blocks()] == ["tool_use"]


# ---------------------------------------------------------------------------
# ChatMLFormatter
# ---------------------------------------------------------------------------

@pytest.fixture
def formatter():
    return (
        ChatMLFormatter()
        .add_system_message("You are a coder.", "simpaticoder")
        .add_user_message("List files")
        .add_assistant_message_with_tool_calls(
            "", [ToolCall(id="c1", name="bash", arguments='{"cmd": "ls"}')],
        )
        .add_tool_message("a.py b.py", "c1", "bash")
    )


class TestChatMLFormatter:
    def test_chaining_and_count(self, formatter):
        assert formatter.message_count == 4
        assert formatter.last_message.role == MessageRole.TOOL

    def test_openai_format(self, formatter):
        out = formatter.to_openai_format()
        assert [m["role"] for m in out] == ["system", "user", "assistant", "tool"]
        assert out[2]["tool_calls"][0]["function"]["name"] == "bash"

    def test_chatml_string_joins_messages(self):
        f = ChatMLFormatter().add_user_message("a").add_assistant_message("b", "bot")
        assert f.to_chatml_string() == (
            "<|im_start|>user\na\n<|im_end|>\n"
            "<|im_start|>assistant name=bot\nb\n<|im_end|>"
        )

    def test_add_message_converts(self):
        f = ChatMLFormatter().add_message(Message.user("hi"))
        assert f.messages == [ChatMLMessage.user("hi")]

    def test_combined_tool_results(self):
        f = ChatMLFormatter().add_tool_results_message("r1\nr2")
        msg = f.last_message
        assert msg.tool_call_id == "combined_tool_results"
        assert msg.name == "tool_results"

    def test_clear(self, formatter):
        assert formatter.clear().message_count == 0
        assert formatter.last_message is None

    def test_limit_history_keeps_first_and_recent(self):
        f = ChatMLFormatter().add_system_message("sys", "s")
        for i in range(5):
            f.add_user_message(f"u{i}")
        f.limit_history(3)

        assert [m.content for m in f.messages] == ["sys", "u3", "u4"]

    def test_limit_history_of_one_keeps_first(self):
        f = ChatMLFormatter().add_user_message("a").add_user_message("b")
        assert [m.content for m in f.limit_history(1).messages] == ["a"]

    def test_limit_history_noop_when_short(self, formatter):
        assert formatter.limit_history(10).message_count == 4

    def test_limit_history_rejects_zero(self, formatter):
        with pytest.raises(ValueError):
            formatter.limit_history(0)

    def test_validate_messages(self, formatter):
        assert formatter.validate_messages()

    @pytest.mark.parametrize(
        "build",
        [
            lambda f: f.add_system_message("unnamed"),
            lambda f: f.add_assistant_message("unnamed"),
            lambda f: f.add_user_message(""),
        ],
        ids=["system_without_name", "assistant_without_name", "empty_content"],
    )
    def test_validate_messages_failures(self, build):
        assert not build(ChatMLFormatter()).validate_messages()

    def test_validate_tool_message_needs_linkage(self):
        f = ChatMLFormatter()
        f._messages.append(ChatMLMessage(role=MessageRole.TOOL, content="x", name="t"))
        assert not f.validate_messages()

    def test_thought_command(self):
        assert ChatMLFormatter().format_thought_command("look", "ls") == (
            "THOUGHT: look\n\n```bash\nls\n```"
        )

    def test_template_variables(self, tmp_path):
        f = ChatMLFormatter()
        variables = {"name": "umf", "task": "stream"}
        assert f.replace_template_variables("{name} does {task} {other}", variables) == (
            "umf does stream {other}"
        )

        path = tmp_path / "prompt.txt"
        path.write_text("Hello {name}")
        assert f.process_template(path, variables) == "Hello umf"

    def test_count_tokens(self, tokenizer):
        f = ChatMLFormatter(tokenizer=tokenizer).add_user_message("one two three")
        # "<|im_start|>user", "one", "two", "three", "<|im_end|>"
        assert f.count_tokens() == 5

    def test_count_tokens_without_tokenizer(self, formatter):
        assert formatter.count_tokens() == 0
