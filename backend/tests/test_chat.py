"""Tests for transcript chat: preconditions, prompt assembly and persistence."""

import pytest

from conftest import OTHER_USER, USER, auth
from meetai.errors import ChatNotAvailableError, LLMProviderError, NotFoundError
from meetai.models.artifacts import SummaryArtifact, TranscriptArtifact
from meetai.repositories.chat_messages import ChatMessagesRepository
from meetai.services.chat_service import (
    EMPTY_REPLY,
    TRUNCATION_MARKER,
    TranscriptChatEngine,
    build_messages,
    build_system_prompt,
    truncate_transcript,
)


def completed_meeting(make_meeting, transcript="Alice: we agreed to ship on Monday.", summary=None, **kwargs):
    artifact = TranscriptArtifact(raw=transcript, cleaned=transcript, char_count=len(transcript))
    return make_meeting(
        status="completed",
        transcript=artifact.to_json(),
        summary=summary.to_json() if summary else None,
        **kwargs,
    )


class TestPromptAssembly:

    def test_truncation(self):
        assert truncate_transcript("abc", 5) == "abc"
        assert truncate_transcript("abcdefgh", 5) == "abcde" + TRUNCATION_MARKER

    def test_missing_summary_literal(self):
        prompt = build_system_prompt("transcript body", None, 12000)
        assert "No summary available." in prompt
        assert "transcript body" in prompt

    def test_history_window(self, session, make_meeting):
        meeting = completed_meeting(make_meeting)
        repo = ChatMessagesRepository(session)
        history = [repo.append(meeting.id, "user" if i % 2 == 0 else "assistant", f"m{i}") for i in range(14)]
        messages = build_messages("sys", history, "question?", max_turns=10)
        assert len(messages) == 12
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1]["content"] == "m4"
        assert messages[-1] == {"role": "user", "content": "question?"}


class TestTranscriptChatEngine:

    def test_chat_requires_completed_meeting(self, session, settings, llm, make_meeting):
        meeting = make_meeting(status="processing")
        engine = TranscriptChatEngine(session, llm, settings)
        with pytest.raises(ChatNotAvailableError):
            engine.send(meeting.id, USER, "What happened?")
        assert ChatMessagesRepository(session).list_by_meeting(meeting.id) == []
        assert llm.calls == []

    def test_other_users_meeting_not_found(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting)
        with pytest.raises(NotFoundError):
            TranscriptChatEngine(session, llm, settings).send(meeting.id, OTHER_USER, "Hi")
        assert ChatMessagesRepository(session).list_by_meeting(meeting.id) == []

    def test_user_message_persisted_before_call(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting, transcript="Alice: action items are the release notes.")
        seen = {}

        def reply(messages):
            stored = ChatMessagesRepository(session).list_by_meeting(meeting.id)
            seen["stored"] = [(m.role, m.content) for m in stored]
            return "Alice owns the release notes."

        llm.queue(reply)
        answer = TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "What were the action items?")

        assert seen["stored"] == [("user", "What were the action items?")]
        assert answer.role == "assistant"
        assert answer.content == "Alice owns the release notes."

        system = llm.calls[0]["messages"][0]
        assert system["role"] == "system"
        assert "No summary available." in system["content"]
        assert "Alice: action items are the release notes." in system["content"]
        assert llm.calls[0]["messages"][-1] == {"role": "user", "content": "What were the action items?"}

        stored = ChatMessagesRepository(session).list_by_meeting(meeting.id)
        assert [(m.role, m.user_id) for m in stored] == [("user", USER), ("assistant", None)]

    def test_summary_included_in_prompt(self, session, settings, llm, make_meeting):
        summary = SummaryArtifact(summary="Ship on Monday.", action_items=["Write notes"])
        meeting = completed_meeting(make_meeting, summary=summary)
        TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "When do we ship?")
        system = llm.calls[0]["messages"][0]["content"]
        assert "Ship on Monday." in system
        assert "- Write notes" in system
        assert "No summary available." not in system

    def test_provider_failure_keeps_only_user_message(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting)
        llm.queue(LLMProviderError("down"))
        with pytest.raises(LLMProviderError):
            TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "Anything?")
        stored = ChatMessagesRepository(session).list_by_meeting(meeting.id)
        assert [m.role for m in stored] == ["user"]

    def test_prior_history_is_bounded(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting)
        repo = ChatMessagesRepository(session)
        for i in range(14):
            repo.append(meeting.id, "user" if i % 2 == 0 else "assistant", f"m{i}")
        TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "Latest?")
        messages = llm.calls[0]["messages"]
        assert len(messages) == 1 + settings.chat_history_turns + 1
        assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(4, 14)]

    def test_long_transcript_truncated(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting, transcript="word " * 5000)
        TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "Summary?")
        assert TRUNCATION_MARKER in llm.calls[0]["messages"][0]["content"]

    def test_empty_reply_replaced(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting)
        llm.queue("   ")
        answer = TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "Hello?")
        assert answer.content == EMPTY_REPLY

    def test_history_is_scoped_to_owner(self, session, settings, make_meeting):
        meeting = completed_meeting(make_meeting)
        ChatMessagesRepository(session).append(meeting.id, "user", "Hi", user_id=USER)
        engine = TranscriptChatEngine(session, None, settings)
        assert [m.content for m in engine.history(meeting.id, USER)] == ["Hi"]
        with pytest.raises(NotFoundError):
            engine.history(meeting.id, OTHER_USER)

    def test_send_without_provider(self, session, settings, make_meeting):
        meeting = completed_meeting(make_meeting)
        with pytest.raises(LLMProviderError):
            TranscriptChatEngine(session, None, settings).send(meeting.id, USER, "Hello?")
        assert ChatMessagesRepository(session).list_by_meeting(meeting.id) == []

    def test_chat_sampling_parameters(self, session, settings, llm, make_meeting):
        meeting = completed_meeting(make_meeting)
        TranscriptChatEngine(session, llm, settings).send(meeting.id, USER, "Hello?")
        assert llm.calls[0]["temperature"] == 0.7
        assert llm.calls[0]["max_tokens"] == 1024
        assert llm.calls[0]["json_mode"] is False


class TestChatEndpoints:

    def test_post_and_history(self, client, make_meeting, llm):
        meeting = completed_meeting(make_meeting)
        llm.queue("On Monday.")
        resp = client.post(f"/meetings/{meeting.id}/chat", json={"message": "When?"}, headers=auth())
        assert resp.status_code == 200
        assert resp.json()["response"] == "On Monday."

        history = client.get(f"/meetings/{meeting.id}/chat", headers=auth()).json()["messages"]
        assert [(m["role"], m["content"]) for m in history] == [("user", "When?"), ("assistant", "On Monday.")]

    def test_not_completed_is_bad_request(self, client, make_meeting):
        meeting = make_meeting(status="active")
        resp = client.post(f"/meetings/{meeting.id}/chat", json={"message": "When?"}, headers=auth())
        assert resp.status_code == 400
        assert client.get(f"/meetings/{meeting.id}/chat", headers=auth()).json()["messages"] == []

    def test_provider_failure_is_bad_gateway(self, client, make_meeting, llm):
        meeting = completed_meeting(make_meeting)
        llm.queue(LLMProviderError("down"))
        resp = client.post(f"/meetings/{meeting.id}/chat", json={"message": "When?"}, headers=auth())
        assert resp.status_code == 502
        history = client.get(f"/meetings/{meeting.id}/chat", headers=auth()).json()["messages"]
        assert [m["role"] for m in history] == ["user"]

    @pytest.mark.parametrize("message", ["", "x" * 2001])
    def test_message_length_validated(self, client, make_meeting, message):
        meeting = completed_meeting(make_meeting)
        resp = client.post(f"/meetings/{meeting.id}/chat", json={"message": message}, headers=auth())
        assert resp.status_code == 422

    def test_history_of_other_users_meeting_not_found(self, client, make_meeting):
        meeting = completed_meeting(make_meeting)
        assert client.get(f"/meetings/{meeting.id}/chat", headers=auth(OTHER_USER)).status_code == 404
