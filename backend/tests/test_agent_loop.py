import pytest

from owl.activity import ActivityKind
from owl.agent.conversation import Role
from owl.agent.loop import ConversationDriver, StopReason
from owl.agent.prompts import FALLBACK_TEXT
from owl.agent.tools import ToolExecutor
from owl.errors import CompletionFailed, ProvisionFailed
from tests.fakes import FailingCompletion, ScriptedCompletion, call, reply


def make_driver(manager, completion, max_rounds=5):
    return ConversationDriver(manager, ToolExecutor(manager), completion, max_rounds=max_rounds)


def events_of(broadcaster, kind, session_key="s1"):
    return [e for e in broadcaster.history(session_key) if e.kind is kind]


def tool_turns(turns):
    return [t for t in turns if t.role is Role.TOOL]


class TestChat:
    async def test_writes_file_then_answers(self, manager, environment, broadcaster):
        completion = ScriptedCompletion(
            [
                reply("", call("write_file", path="hello.txt", content="hi")),
                reply("Done"),
            ]
        )
        driver = make_driver(manager, completion)

        outcome = await driver.chat("s1", "Create a file hello.txt containing hi")

        assert outcome.text == "Done"
        assert outcome.rounds == 2
        assert outcome.stop_reason is StopReason.COMPLETED
        assert environment.sandboxes["sbx-1"].files["hello.txt"] == b"hi"

        tool_calls = events_of(broadcaster, ActivityKind.TOOL_CALL)
        assert len(tool_calls) == 1
        assert tool_calls[0].payload["name"] == "write_file"
        assert tool_calls[0].payload["input"] == {"path": "hello.txt", "content": "hi"}
        assert len(events_of(broadcaster, ActivityKind.FILE_CHANGE)) == 1

        results = tool_turns(completion.calls[1])
        assert [r.content for r in results] == ["Wrote 2 bytes to hello.txt"]

    async def test_plain_answer_is_one_round(self, manager):
        completion = ScriptedCompletion([reply("Hello!")])

        outcome = await make_driver(manager, completion).chat("s1", "hi")

        assert outcome.text == "Hello!"
        assert outcome.rounds == 1
        assert len(completion.calls) == 1

    async def test_empty_reply_falls_back(self, manager):
        outcome = await make_driver(manager, ScriptedCompletion([reply("")])).chat("s1", "hi")
        assert outcome.text == FALLBACK_TEXT

    async def test_texts_from_every_round_are_joined(self, manager):
        completion = ScriptedCompletion(
            [reply("Installing.", call("run_command", command="true")), reply("All set.")]
        )
        outcome = await make_driver(manager, completion).chat("s1", "setup")
        assert outcome.text == "Installing.\n\nAll set."

    async def test_history_is_sent_before_new_message(self, manager):
        completion = ScriptedCompletion([reply("ok")])
        history = [
            {"role": "user", "content": "build a blog"},
            {"role": "assistant", "content": "Built it."},
        ]

        await make_driver(manager, completion).chat("s1", "now add tags", history)

        sent = completion.calls[0]
        assert [t.content for t in sent] == ["build a blog", "Built it.", "now add tags"]

    async def test_each_invocation_gets_one_result_in_order(self, manager):
        invocations = [
            call("run_command", call_id="call_a", command="echo a"),
            call("run_command", call_id="call_b", command="echo b"),
            call("list_files", call_id="call_c"),
        ]
        completion = ScriptedCompletion([reply("", *invocations), reply("done")])

        await make_driver(manager, completion).chat("s1", "go")

        second_request = completion.calls[1]
        assert second_request[-3:] == tool_turns(second_request)
        assert [t.tool_call_id for t in tool_turns(second_request)] == ["call_a", "call_b", "call_c"]

    async def test_later_invocations_see_earlier_effects(self, manager):
        completion = ScriptedCompletion(
            [
                reply(
                    "",
                    call("write_file", path="config/app.json", content='{"ok": true}'),
                    call("run_command", command="cat config/app.json"),
                ),
                reply("verified"),
            ]
        )

        await make_driver(manager, completion).chat("s1", "write and check")

        results = tool_turns(completion.calls[1])
        assert results[1].content == '{"ok": true}'

    async def test_failed_command_is_reported_not_raised(self, manager):
        completion = ScriptedCompletion(
            [reply("", call("run_command", command="false")), reply("I'll try another way.")]
        )

        outcome = await make_driver(manager, completion).chat("s1", "run it")

        assert outcome.stop_reason is StopReason.COMPLETED
        assert tool_turns(completion.calls[1])[0].content.startswith("Error (exit 1)")

    async def test_unknown_tool_does_not_stop_the_loop(self, manager):
        completion = ScriptedCompletion([reply("", call("teleport")), reply("sorry")])

        outcome = await make_driver(manager, completion).chat("s1", "go")

        assert outcome.text == "sorry"
        assert tool_turns(completion.calls[1])[0].content == "Unknown tool: teleport"

    async def test_stops_at_max_rounds(self, manager, broadcaster):
        completion = ScriptedCompletion(
            [reply("", call("run_command", command="true"))], repeat_last=True
        )

        outcome = await make_driver(manager, completion, max_rounds=3).chat("s1", "loop forever")

        assert len(completion.calls) == 3
        assert outcome.rounds == 3
        assert outcome.stop_reason is StopReason.MAX_ITERATIONS_EXCEEDED
        assert outcome.text == FALLBACK_TEXT
        warnings = [
            e for e in events_of(broadcaster, ActivityKind.ERROR)
            if e.payload.get("level") == "warning"
        ]
        assert len(warnings) == 1
        assert len(events_of(broadcaster, ActivityKind.TOOL_CALL)) == 3

    async def test_completion_failure_is_fatal(self, manager, broadcaster):
        driver = make_driver(manager, FailingCompletion(RuntimeError("gateway 503")))

        with pytest.raises(CompletionFailed) as exc_info:
            await driver.chat("s1", "hi")

        assert "gateway 503" in str(exc_info.value)
        errors = events_of(broadcaster, ActivityKind.ERROR)
        assert errors[-1].payload["message"] == "Model request failed: gateway 503"

    async def test_provision_failure_aborts_before_completion(self, manager, environment):
        environment.create_error = RuntimeError("no capacity")
        completion = ScriptedCompletion([reply("never")])

        with pytest.raises(ProvisionFailed):
            await make_driver(manager, completion).chat("s1", "hi")

        assert completion.calls == []

    async def test_empty_message_is_rejected(self, manager, environment):
        with pytest.raises(ValueError):
            await make_driver(manager, ScriptedCompletion([reply("x")])).chat("s1", "   ")
        assert environment.create_calls == 0

    async def test_expired_sandbox_is_replaced_on_next_chat(self, manager, environment):
        completion = ScriptedCompletion([reply("one"), reply("two")])
        driver = make_driver(manager, completion)

        await driver.chat("s1", "first")
        environment.kill("sbx-1")
        outcome = await driver.chat("s1", "second")

        assert outcome.text == "two"
        assert environment.create_calls == 2
        assert manager.status("s1").environment_id == "sbx-2"


async def test_max_rounds_must_be_positive(manager):
    with pytest.raises(ValueError):
        make_driver(manager, ScriptedCompletion([]), max_rounds=0)
