"""Event Hubs REST publisher for the streaming verification stages.

Batches are sent with ``application/vnd.microsoft.servicebus.json``, one
``{"Body": ...}`` entry per event, authorised with an Entra ID token for the
``https://eventhubs.azure.net`` audience.
"""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from fabric_deploy.control_plane.http import raise_for_response, send
from fabric_deploy.core.logging import get_logger

logger = get_logger(__name__)

API_VERSION = "2014-01"


class EventHubPublisher:
    def __init__(
        self,
        namespace: str,
        hub: str,
        token: Callable[[], str],
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        host = namespace if "." in namespace else f"{namespace}.servicebus.windows.net"
        self.url = f"https://{host}/{hub}/messages"
        self.hub = hub
        self._token = token
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, events: list[dict[str, Any]]) -> None:
        if not events:
            return
        batch = [{"Body": json.dumps(event, default=str)} for event in events]
        response = send(
            self._client,
            "POST",
            self.url,
            params={"timeout": "60", "api-version": API_VERSION},
            content=json.dumps(batch),
            headers={
                "Authorization": f"Bearer {self._token()}",
                "Content-Type": "application/vnd.microsoft.servicebus.json",
            },
            timeout=self.timeout,
        )
        raise_for_response(response, resource_kind="EventHub", resource_name=self.hub)
        logger.info("eventhub.sent", hub=self.hub, events=len(events))

    def close(self) -> None:
        self._client.close()


__all__ = ["EventHubPublisher"]
