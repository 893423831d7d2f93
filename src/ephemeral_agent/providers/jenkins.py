"""Jenkins as the work-receiving system: agent presence from the computer API."""

from __future__ import annotations

import asyncio
from typing import Any, cast
from urllib import parse as urllib_parse

import requests

from ephemeral_agent.enums import AgentPresence
from ephemeral_agent.errors import RegistryUnavailable


class JenkinsAgentRegistry:
    """Reads `GET {base_url}/computer/{label}/api/json` for an agent's status.

    An unknown node is reported offline rather than as an error: agents only
    appear once they have booted and registered.
    """

    def __init__(
        self,
        base_url: str,
        user: str | None = None,
        token: str | None = None,
        timeout: float = 10.0,
        client: Any | None = None,
    ) -> None:
        parsed = urllib_parse.urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Jenkins URL must be http(s) with a host: {base_url!r}")
        if timeout <= 0:
            raise ValueError("Jenkins timeout must be positive")
        self.base_url = base_url.rstrip("/")
        self._auth = (user, token) if user and token else None
        self._timeout = timeout
        self._client = client

    def node_url(self, agent_label: str) -> str:
        return f"{self.base_url}/computer/{urllib_parse.quote(agent_label, safe='')}/api/json"

    def _get_once(self, agent_label: str) -> dict[str, Any] | None:
        client = self._client or requests
        response = client.get(
            self.node_url(agent_label),
            params={"tree": "displayName,offline,temporarilyOffline,idle"},
            auth=self._auth,
            timeout=self._timeout,
        )
        status_code = getattr(response, "status_code", 200)
        if status_code == 404:
            return None
        if status_code != 200:
            raise RegistryUnavailable(
                f"Jenkins returned status {status_code} for {agent_label}"
            )
        return cast(dict[str, Any], response.json())

    async def describe_status(self, agent_label: str) -> AgentPresence:
        try:
            node = await asyncio.to_thread(self._get_once, agent_label)
        except requests.RequestException as exc:
            raise RegistryUnavailable(f"Jenkins lookup for {agent_label} failed: {exc}") from exc
        except ValueError as exc:
            raise RegistryUnavailable(f"Jenkins sent invalid JSON for {agent_label}") from exc
        if node is None or node.get("offline", True) or node.get("temporarilyOffline"):
            return AgentPresence.OFFLINE
        return AgentPresence.ONLINE
