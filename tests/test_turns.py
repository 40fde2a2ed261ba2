"""
Tests for backend/turns.py
"""
import threading
import time

import pytest

from backend import config
from backend.conversation_store import ConversationNotFound, NotConversationOwner
from backend.turns import ERROR_REPLY, TurnOrchestrator

USER = "local-user-principal"


@pytest.fixture
def orchestrator(services):
    services.conversations.create(USER, "c1")
    return services.orchestrator


class TestSuccessfulTurn:
    def test_appends_user_and_ai_messages(self, services, orchestrator, provider):
        before = services.conversations.get("c1")
        result = orchestrator.handle_turn(USER, "c1", "Hello", mode="coder")

        stored = services.conversations.get("c1")
        assert len(stored["messages"]) == len(before["messages"]) + 2
        user_msg, ai_msg = stored["messages"]
        assert (user_msg["sender"], user_msg["content"]) == ("user", "Hello")
        assert ai_msg["sender"] == "ai"
        assert ai_msg["content"] == "Hello from the model"
        assert ai_msg["model"] == "model-a"
        assert ai_msg["isError"] is False
        assert result.ai_message == ai_msg
        assert stored["lastActive"] == ai_msg["timestamp"]
        assert stored["lastActive"] >= before["lastActive"]
        assert provider.calls[0]["parts"][0]["text"].endswith("User: Hello")

    def test_profile_grounds_prompt(self, services, orchestrator, provider):
        services.profiles.save(USER, "Ada", {"theme": "dark"})
        orchestrator.handle_turn(USER, "c1", "hi")
        head = provider.calls[0]["parts"][0]["text"]
        assert "You are speaking to Ada" in head
        assert "prefers dark theme" in head

    def test_second_turn_carries_history(self, orchestrator, provider):
        orchestrator.handle_turn(USER, "c1", "first")
        orchestrator.handle_turn(USER, "c1", "second")
        second_call = provider.calls[1]
        assert second_call["kind"] == "chat"
        assert second_call["history"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "Hello from the model"},
        ]

    def test_history_bounded_over_long_conversation(self, orchestrator, provider):
        for i in range(12):
            orchestrator.handle_turn(USER, "c1", f"turn {i}")
        assert all(len(call["history"]) <= 10 for call in provider.calls)

    def test_message_count_monotonic(self, services, orchestrator):
        counts = []
        for i in range(3):
            orchestrator.handle_turn(USER, "c1", f"turn {i}")
            counts.append(len(services.conversations.get("c1")["messages"]))
        assert counts == [2, 4, 6]


class TestFailedTurn:
    def test_all_models_fail_yields_error_message(self, services, orchestrator, provider, sleeper, error_log):
        provider.responses = {m: RuntimeError(f"{m} is down") for m in ("model-a", "model-b", "model-c")}
        result = orchestrator.handle_turn(USER, "c1", "Hello")

        stored = services.conversations.get("c1")
        assert len(stored["messages"]) == 2
        ai_msg = stored["messages"][1]
        assert ai_msg["isError"] is True
        assert ai_msg["content"] == ERROR_REPLY
        assert "is down" not in ai_msg["content"]
        assert result.ai_message == ai_msg
        assert sleeper.calls == [1.0, 1.0]
        log_text = error_log.read_text(encoding="utf-8")
        assert "model-c is down" in log_text
        assert "Traceback" in log_text

    def test_recovers_on_later_model(self, services, orchestrator, provider):
        provider.responses = {"model-a": RuntimeError("gone"), "model-b": "backup answer"}
        result = orchestrator.handle_turn(USER, "c1", "Hello")
        assert result.ai_message["content"] == "backup answer"
        assert result.ai_message["model"] == "model-b"
        assert provider.models_called == ["model-a", "model-b"]


class TestPreconditions:
    def test_unknown_conversation(self, orchestrator, provider):
        with pytest.raises(ConversationNotFound):
            orchestrator.handle_turn(USER, "nope", "Hello")
        assert provider.calls == []

    def test_foreign_conversation(self, services, orchestrator):
        services.conversations.create("someone-else", "theirs")
        with pytest.raises(NotConversationOwner):
            orchestrator.handle_turn(USER, "theirs", "Hello")
        assert services.conversations.get("theirs")["messages"] == []

    def test_non_user_sender_skips_generation(self, services, orchestrator, provider):
        result = orchestrator.handle_turn(USER, "c1", "Welcome!", sender="system", message_type="systemMessage")
        assert result.ai_message is None
        assert provider.calls == []
        stored = services.conversations.get("c1")
        assert [m["sender"] for m in stored["messages"]] == ["system"]

    def test_missing_attachment_behaves_like_none(self, orchestrator, provider):
        orchestrator.handle_turn(USER, "c1", "Hello", file_id="does-not-exist")
        assert len(provider.calls[0]["parts"]) == 1


class TestLockRegistry:
    def test_unknown_ids_leave_no_lock_entries(self, orchestrator):
        for i in range(50):
            with pytest.raises(ConversationNotFound):
                orchestrator.handle_turn(USER, f"ghost-{i}", "Hello")
        assert len(orchestrator.locks) == 0

    def test_foreign_ids_leave_no_lock_entries(self, services, orchestrator):
        services.conversations.create("someone-else", "theirs")
        with pytest.raises(NotConversationOwner):
            orchestrator.handle_turn(USER, "theirs", "Hello")
        assert len(orchestrator.locks) == 0

    def test_finished_turn_releases_its_entry(self, services, orchestrator):
        orchestrator.handle_turn(USER, "c1", "Hello")
        assert len(orchestrator.locks) == 0
        services.conversations.delete(USER, "c1")
        assert len(orchestrator.locks) == 0

    def test_failed_turn_releases_its_entry(self, services, orchestrator):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        services.conversations.append_messages = broken
        with pytest.raises(RuntimeError):
            orchestrator.handle_turn(USER, "c1", "Hello")
        assert len(orchestrator.locks) == 0


class TestModelChain:
    def test_empty_chain_rejected_at_construction(self, services):
        with pytest.raises(ValueError):
            TurnOrchestrator(services.conversations, services.profiles, services.composer, provider=None, models=[])

    def test_blank_env_chain_uses_defaults(self, monkeypatch, services):
        monkeypatch.setenv("NAT_MODELS", " , ,")
        assert config.candidate_models() == list(config.DEFAULT_MODELS)
        orch = TurnOrchestrator(services.conversations, services.profiles, services.composer, provider=None)
        assert orch.models == list(config.DEFAULT_MODELS)

    def test_env_chain_order_kept(self, monkeypatch):
        monkeypatch.setenv("NAT_MODELS", "fast, slow ,")
        assert config.candidate_models() == ["fast", "slow"]


class TestConcurrency:
    def test_same_conversation_turns_do_not_lose_messages(self, services, orchestrator, provider):
        original = provider.respond

        def slow_respond(*args, **kwargs):
            time.sleep(0.05)
            return original(*args, **kwargs)

        provider.respond = slow_respond
        threads = [
            threading.Thread(target=orchestrator.handle_turn, args=(USER, "c1", f"parallel {i}"))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        messages = services.conversations.get("c1")["messages"]
        assert len(messages) == 8
        # Serialized turns keep each user message directly followed by its reply.
        assert [m["sender"] for m in messages] == ["user", "ai"] * 4
