"""Pytest configuration and fixtures for the revenue engine tests."""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from core.agent_service import AgentResponse, AgentStatus


class FakeAgent:
    """Agent Service stand-in: queued responses in order, then the default."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.responses: List[AgentResponse] = []
        self.default = AgentResponse(status=AgentStatus.SUCCESS, result={})

    async def invoke(self, agent_role: str, prompt: str, context: Optional[Dict[str, Any]] = None) -> AgentResponse:
        self.calls.append((agent_role, prompt))
        if self.responses:
            return self.responses.pop(0)
        return self.default


class FakeNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, kind, data: Dict[str, Any]) -> bool:
        self.sent.append((getattr(kind, "value", kind), dict(data)))
        return True

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.sent]


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch, tmp_path):
    """Point every store at a temp dir and reset singletons between tests."""
    monkeypatch.setenv("HIVE_DIR", str(tmp_path / ".hive-mind"))
    monkeypatch.setenv("STATE_BACKEND", "file")
    for name in (
        "REDIS_URL",
        "SLACK_WEBHOOK_URL",
        "AGENT_SERVICE_URL",
        "ADMISSION_TIMEZONE",
        "WEBHOOK_SIGNATURE_REQUIRED",
        "EMAIL_BACKEND",
        "GMAIL_ACCESS_TOKEN",
        "NETWORK_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)

    yield

    from core import admission_controller, agent_service, approval_engine, notifications, slack_handler
    from core.state_store import reset_state_store

    reset_state_store()
    admission_controller._controller_instance = None
    agent_service._client_instance = None
    approval_engine._engine_instance = None
    notifications._notification_manager = None
    slack_handler._handler_instance = None


@pytest.fixture
def store(tmp_path):
    from core.state_store import StateStore
    return StateStore(hive_dir=tmp_path / ".hive-mind")


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()
