#!/usr/bin/env python3
"""
Agent Service client.

Every AI step (booking research, transcript extraction, reply
classification, professional-network actions) goes through a single call:

    invoke(agent_role, prompt) -> AgentResponse(status, result)

Calls are bounded by AGENT_SERVICE_TIMEOUT_SECONDS. Timeouts and transport
errors come back as a non-success AgentResponse; callers decide whether that
is a recoverable failure. Nothing here retries.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from core.config import get_agent_settings

logger = logging.getLogger("agent_service")


class AgentStatus:
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass
class AgentResponse:
    status: str
    result: Any = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == AgentStatus.SUCCESS

    def result_dict(self) -> Dict[str, Any]:
        """Structured result, decoding JSON text results when possible."""
        if isinstance(self.result, dict):
            return self.result
        if isinstance(self.result, str):
            try:
                decoded = json.loads(self.result)
            except json.JSONDecodeError:
                return {"text": self.result}
            return decoded if isinstance(decoded, dict) else {"value": decoded}
        if self.result is None:
            return {}
        return {"value": self.result}


class AgentServiceClient:
    """Thin HTTP client for the Agent Service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("AGENT_SERVICE_URL") or "").strip()
        self.api_key = (api_key or os.getenv("AGENT_SERVICE_API_KEY") or "").strip()
        configured = get_agent_settings().get("timeout_seconds", 20)
        self.timeout_seconds = float(
            timeout_seconds or os.getenv("AGENT_SERVICE_TIMEOUT_SECONDS") or configured
        )
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def invoke(self, agent_role: str, prompt: str, context: Optional[Dict[str, Any]] = None) -> AgentResponse:
        if not self.base_url:
            logger.warning("AGENT_SERVICE_URL not set - skipping %s call", agent_role)
            return AgentResponse(status=AgentStatus.ERROR, message="Agent service not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload: Dict[str, Any] = {"agent_role": agent_role, "message": prompt}
        if context:
            payload["context"] = context

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.base_url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("Agent %s timed out after %.1fs", agent_role, self.timeout_seconds)
            return AgentResponse(status=AgentStatus.TIMEOUT, message=f"{agent_role} timed out")
        except httpx.HTTPStatusError as e:
            logger.warning("Agent %s returned HTTP %s", agent_role, e.response.status_code)
            return AgentResponse(status=AgentStatus.ERROR, message=f"HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Agent %s call failed: %s", agent_role, e)
            return AgentResponse(status=AgentStatus.ERROR, message=str(e))

        status = str(data.get("status") or AgentStatus.ERROR)
        logger.debug("Agent %s responded with status=%s", agent_role, status)
        return AgentResponse(
            status=status,
            result=data.get("result"),
            message=str(data.get("message") or ""),
            raw=data,
        )


_client_instance: Optional[AgentServiceClient] = None
_client_lock = threading.Lock()


def get_agent_service() -> AgentServiceClient:
    """Get thread-safe singleton instance of AgentServiceClient."""
    global _client_instance
    if _client_instance is None:
        with _client_lock:
            if _client_instance is None:
                _client_instance = AgentServiceClient()
    return _client_instance
