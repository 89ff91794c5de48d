"""Test configuration and fixtures."""

import asyncio
import os
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment variables BEFORE importing the app
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
os.environ["SUPABASE_URL"] = "https://test-project.supabase.co"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["ENABLE_AUTH"] = "true"

from bmc_assist.assistant.completion import CompletionProvider
from bmc_assist.config import Settings
from bmc_assist.main import create_app
from bmc_assist.security.auth import AuthenticatedUser, extract_bearer_token
from bmc_assist.usage.recorder import UsageRecorder
from bmc_assist.usage.store import UsageRecord, UsageTotals

VALID_TOKEN = "valid-user-token"
USER_ID = "7f1c2d3e-4b5a-4c6d-8e9f-0a1b2c3d4e5f"
USER_EMAIL = "founder@example.com"


# ---------------------------------------------------------------------------
# Provider events
# ---------------------------------------------------------------------------

def text_event(text: str):
    return SimpleNamespace(type="text", text=text)


def message_start(input_tokens: int, output_tokens: int = 1):
    return SimpleNamespace(
        type="message_start",
        message=SimpleNamespace(
            usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens)
        ),
    )


def message_delta(output_tokens: int):
    return SimpleNamespace(
        type="message_delta",
        usage=SimpleNamespace(output_tokens=output_tokens, input_tokens=None),
    )


def default_events():
    return [
        message_start(input_tokens=412),
        text_event("Vos clients principaux sont "),
        text_event("les étudiants et les PME."),
        message_delta(output_tokens=57),
    ]


# ---------------------------------------------------------------------------
# Fake Anthropic client
# ---------------------------------------------------------------------------

class FakeMessageStream:
    """Async-iterable stand-in for the SDK's message stream."""

    def __init__(self, events, delay: float = 0.0):
        self._events = list(events)
        self._delay = delay

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            if self._delay:
                await asyncio.sleep(self._delay)
            if isinstance(event, BaseException):
                raise event
            yield event


class FakeStreamManager:
    def __init__(
        self,
        stream: FakeMessageStream,
        open_error: Optional[BaseException] = None,
        open_delay: float = 0.0,
    ):
        self._stream = stream
        self._open_error = open_error
        self._open_delay = open_delay
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        self.entered = True
        if self._open_delay:
            await asyncio.sleep(self._open_delay)
        if self._open_error is not None:
            raise self._open_error
        return self._stream

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True
        return False


class FakeMessages:
    def __init__(self, owner: "FakeAnthropicClient"):
        self._owner = owner

    def stream(self, **kwargs):
        self._owner.calls.append(kwargs)
        manager = FakeStreamManager(
            FakeMessageStream(self._owner.events, delay=self._owner.delay),
            open_error=self._owner.open_error,
            open_delay=self._owner.open_delay,
        )
        self._owner.managers.append(manager)
        return manager


class FakeAnthropicClient:
    """Records every ``messages.stream`` call and replays scripted events."""

    def __init__(
        self,
        events=None,
        open_error: Optional[BaseException] = None,
        delay: float = 0.0,
        open_delay: float = 0.0,
    ):
        self.events = default_events() if events is None else events
        self.open_error = open_error
        self.delay = delay
        self.open_delay = open_delay
        self.calls: List[dict] = []
        self.managers: List[FakeStreamManager] = []
        self.messages = FakeMessages(self)


# ---------------------------------------------------------------------------
# Auth and storage stubs
# ---------------------------------------------------------------------------

class StubIdentityVerifier:
    """Maps bearer tokens to users without any network call."""

    def __init__(self, users: Dict[str, AuthenticatedUser]):
        self.users = users
        self.calls: List[Optional[str]] = []

    async def verify(self, authorization_header):
        self.calls.append(authorization_header)
        token = extract_bearer_token(authorization_header)
        if token is None:
            return None
        return self.users.get(token)


class InMemoryUsageStore:
    def __init__(self, fail: bool = False):
        self.records: List[UsageRecord] = []
        self.fail = fail

    async def insert(self, record: UsageRecord) -> None:
        if self.fail:
            raise RuntimeError("store unavailable")
        self.records.append(record)

    async def monthly_totals(self, user_id: str, month: str, tool: str) -> UsageTotals:
        rows = [
            r for r in self.records
            if r.user_id == user_id and r.month == month and r.tool == tool
        ]
        return UsageTotals(
            month=month,
            requests=len(rows),
            tokens_in=sum(r.tokens_in for r in rows),
            tokens_out=sum(r.tokens_out for r in rows),
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        anthropic_api_key="test-anthropic-key",
        supabase_url="https://test-project.supabase.co",
        supabase_service_role_key="test-service-role-key",
        enable_auth=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_anthropic() -> FakeAnthropicClient:
    return FakeAnthropicClient()


@pytest.fixture
def usage_store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def identity_verifier() -> StubIdentityVerifier:
    return StubIdentityVerifier({
        VALID_TOKEN: AuthenticatedUser(id=USER_ID, email=USER_EMAIL),
    })


def build_app(settings, fake_anthropic, usage_store, identity_verifier):
    app = create_app(settings)
    app.state.completion_provider = CompletionProvider(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.max_output_tokens,
        timeout_seconds=settings.stream_timeout_seconds,
        client=fake_anthropic,
    )
    app.state.identity_verifier = identity_verifier
    app.state.usage_recorder = UsageRecorder(usage_store, tool=settings.usage_tool)
    return app


@pytest.fixture
def app(settings, fake_anthropic, usage_store, identity_verifier):
    """Fresh application per test: new rate limiter, fake provider, stub auth."""
    return build_app(settings, fake_anthropic, usage_store, identity_verifier)


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {VALID_TOKEN}", "X-Forwarded-For": "203.0.113.7"}


@pytest.fixture
def suggest_payload() -> dict:
    return {
        "messages": [{"role": "user", "content": "Aide-moi à remplir ce bloc."}],
        "currentBlock": "segments",
        "currentBlockTitle": "Segments de clientèle",
        "currentText": "",
        "allData": {"proposition": "vend des stylos"},
        "mode": "suggest",
    }


def parse_sse(body: str) -> List[str]:
    """Return the payload of every ``data:`` frame in an SSE body."""
    return [
        chunk[len("data: "):]
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]
