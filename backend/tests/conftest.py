"""Shared fixtures: in-memory database, scripted LLM and a wired test app."""

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from meetai.config import Settings
from meetai.main import create_app
from meetai.models.agent import Agent
from meetai.models.base import init_db
from meetai.models.meeting import Meeting
from meetai.services.llm.base import LLMProvider

USER = "user_1"
OTHER_USER = "user_2"

SUMMARY_REPLY = json.dumps({
    "summary": "The team agreed on the launch plan.",
    "keyPoints": ["Launch next week"],
    "actionItems": ["Alice to prepare the release notes"],
    "decisionsMade": ["Ship on Monday"],
    "sentiment": {"overall": "positive", "confidence": 0.8},
    "speakerHighlights": [{"speaker": "Alice", "mainPoints": ["Owns release notes"]}],
    "meetingNotes": "## Launch\n- Ship on Monday",
})


class FakeLLM(LLMProvider):
    """Returns queued replies in order, then defaults.

    A queued exception is raised; a queued callable is called with the messages.
    """

    name = "fake"

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def complete(self, messages, *, json_mode=False, temperature=None, max_tokens=None):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "json_mode": json_mode,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.replies:
            reply = self.replies.pop(0)
        else:
            reply = SUMMARY_REPLY if json_mode else "Partial summary."
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply


class FakeFetcher:
    """Maps transcript URLs to a result dict or an exception to raise."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def __call__(self, url, timeout=30.0):
        self.calls.append(url)
        outcome = self.responses.get(url)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            raise RuntimeError(f"unexpected url {url}")
        return outcome


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        logs_dir=tmp_path / "logs",
        webhook_secret="test-secret",
        stream_api_key="test-key",
        pipeline_backoff_seconds=0,
        pipeline_workers=0,
        pipeline_max_attempts=3,
    )


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def app(settings, engine, llm, fetcher):
    return create_app(settings=settings, engine=engine, llm_factory=lambda: llm, fetcher=fetcher)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def orchestrator(app):
    return app.state.orchestrator


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def make_agent(session):
    def _make(user_id=USER, name="Scribe", instructions="Take notes"):
        agent = Agent(user_id=user_id, name=name, instructions=instructions)
        session.add(agent)
        session.commit()
        session.refresh(agent)
        return agent

    return _make


@pytest.fixture
def make_meeting(session, make_agent):
    def _make(status="upcoming", user_id=USER, call_id=None, with_agent=True, **fields):
        agent_id = make_agent(user_id=user_id).id if with_agent else None
        meeting = Meeting(
            user_id=user_id,
            name=fields.pop("name", "Weekly sync"),
            agent_id=agent_id,
            call_id=call_id,
            status=status,
            **fields,
        )
        session.add(meeting)
        session.commit()
        session.refresh(meeting)
        return meeting

    return _make


def reload(session, model, identifier):
    session.expire_all()
    return session.get(model, identifier)


def auth(user_id=USER):
    return {"X-User-Id": user_id}
