from __future__ import annotations

from typing import Any

import pytest
import requests

from ephemeral_agent.enums import AgentPresence
from ephemeral_agent.errors import RegistryUnavailable
from ephemeral_agent.providers.jenkins import JenkinsAgentRegistry


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeClient:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_rejects_non_http_urls() -> None:
    with pytest.raises(ValueError):
        JenkinsAgentRegistry("ftp://ci.example.com")
    with pytest.raises(ValueError):
        JenkinsAgentRegistry("https://ci.example.com", timeout=0)


def test_node_url_quotes_the_label() -> None:
    registry = JenkinsAgentRegistry("https://ci.example.com/jenkins/")
    assert (
        registry.node_url("ephemeral-a b")
        == "https://ci.example.com/jenkins/computer/ephemeral-a%20b/api/json"
    )


@pytest.mark.asyncio
async def test_presence_mapping() -> None:
    client = _FakeClient(
        _FakeResponse(200, {"offline": False, "temporarilyOffline": False}),
        _FakeResponse(200, {"offline": True}),
        _FakeResponse(200, {"offline": False, "temporarilyOffline": True}),
        _FakeResponse(404),
    )
    registry = JenkinsAgentRegistry(
        "https://ci.example.com", user="bot", token="t0k3n", client=client
    )
    assert await registry.describe_status("ephemeral-1") == AgentPresence.ONLINE
    assert await registry.describe_status("ephemeral-1") == AgentPresence.OFFLINE
    assert await registry.describe_status("ephemeral-1") == AgentPresence.OFFLINE
    assert await registry.describe_status("ephemeral-1") == AgentPresence.OFFLINE
    assert client.calls[0]["auth"] == ("bot", "t0k3n")
    assert client.calls[0]["timeout"] == 10.0
    assert "offline" in client.calls[0]["params"]["tree"]


@pytest.mark.asyncio
async def test_failures_become_registry_unavailable() -> None:
    client = _FakeClient(
        _FakeResponse(503),
        requests.ConnectionError("refused"),
        _FakeResponse(200, ValueError("not json")),
    )
    registry = JenkinsAgentRegistry("https://ci.example.com", client=client)
    for _ in range(3):
        with pytest.raises(RegistryUnavailable):
            await registry.describe_status("ephemeral-1")
    assert client.calls[0]["auth"] is None
