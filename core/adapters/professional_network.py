#!/usr/bin/env python3
"""
Professional Network Adapter
============================
Connection requests, InMail and post engagement.

There is no first-party API for these actions; they are delegated to the
Agent Service's network orchestrator role, which drives the account through
its own tooling. The adapter turns each action into a prompt and the agent's
response into an ActionResult.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.agent_service import AgentServiceClient, get_agent_service
from core.config import get_agent_role

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    success: bool
    action_id: Optional[str] = None
    error: Optional[str] = None
    result: Any = None
    performed_at: Optional[str] = None

    def __post_init__(self):
        if self.success and not self.performed_at:
            self.performed_at = datetime.now(timezone.utc).isoformat()


class ProfessionalNetworkAdapter(ABC):

    @abstractmethod
    async def send_connection_request(self, profile_url: str, message: str, name: str = "", headline: str = "") -> ActionResult:
        ...

    @abstractmethod
    async def send_inmail(self, profile_url: str, subject: str, body: str) -> ActionResult:
        ...

    @abstractmethod
    async def engage_with_post(self, post_url: str, action: str, comment: Optional[str] = None) -> ActionResult:
        ...


class AgentNetworkAdapter(ProfessionalNetworkAdapter):
    """Delegates every action to the Agent Service orchestrator role."""

    def __init__(self, agent: Optional[AgentServiceClient] = None, role: Optional[str] = None):
        self.agent = agent or get_agent_service()
        self.role = role or get_agent_role("professional_network", "network_orchestrator")

    async def _run(self, prefix: str, prompt: str, failure: str) -> ActionResult:
        response = await self.agent.invoke(self.role, prompt)
        if not response.ok:
            logger.warning("%s failed: %s", prefix, response.message or response.status)
            return ActionResult(success=False, error=response.message or failure)
        return ActionResult(
            success=True,
            action_id=f"{prefix}_{int(time.time() * 1000)}",
            result=response.result,
        )

    async def send_connection_request(self, profile_url, message, name="", headline="") -> ActionResult:
        prompt = (
            "Send connection request:\n\n"
            f"Profile: {profile_url}\n"
            f"Name: {name}\n"
            f"Headline: {headline or 'N/A'}\n"
            f"Message: {message}"
        )
        return await self._run("conn", prompt, "Failed to send connection request")

    async def send_inmail(self, profile_url, subject, body) -> ActionResult:
        prompt = (
            "Send InMail message:\n\n"
            f"Profile: {profile_url}\n"
            f"Subject: {subject}\n"
            f"Body: {body}"
        )
        return await self._run("inmail", prompt, "Failed to send InMail")

    async def engage_with_post(self, post_url, action, comment=None) -> ActionResult:
        lines = ["Engage with post:", "", f"Post URL: {post_url}", f"Action: {action}"]
        if comment:
            lines.append(f"Comment: {comment}")
        return await self._run("engage", "\n".join(lines), "Failed to engage with post")


class MockNetworkAdapter(ProfessionalNetworkAdapter):
    """Records actions in memory."""

    def __init__(self, fail_with: Optional[str] = None):
        self.actions: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    def _record(self, prefix: str, **details) -> ActionResult:
        if self.fail_with:
            return ActionResult(success=False, error=self.fail_with)
        self.actions.append({"type": prefix, **details})
        return ActionResult(success=True, action_id=f"{prefix}_mock_{len(self.actions)}")

    async def send_connection_request(self, profile_url, message, name="", headline="") -> ActionResult:
        return self._record("conn", profile_url=profile_url, message=message)

    async def send_inmail(self, profile_url, subject, body) -> ActionResult:
        return self._record("inmail", profile_url=profile_url, subject=subject)

    async def engage_with_post(self, post_url, action, comment=None) -> ActionResult:
        return self._record("engage", post_url=post_url, action=action, comment=comment)


def get_network_adapter(backend: Optional[str] = None) -> ProfessionalNetworkAdapter:
    """Agent-backed adapter unless NETWORK_BACKEND=mock."""
    backend = (backend or os.getenv("NETWORK_BACKEND", "agent")).lower()
    if backend == "mock":
        return MockNetworkAdapter()
    return AgentNetworkAdapter()
