from typing import Protocol

import httpx

from orchestrator.clients.http import ControlResponse, send_request
from orchestrator.config import Settings


class ControlSurface(Protocol):
    def request(
        self, resource_path: str, payload: dict | None = None, method: str = "PUT"
    ) -> ControlResponse: ...


class VMMClient:
    """HTTP client for a VMM control endpoint.

    The transport is chosen at construction: a Unix domain socket, a TCP base
    URL, or a caller-supplied httpx.Client.
    """

    def __init__(
        self,
        *,
        socket_path: str | None = None,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
    ):
        if client is None:
            if socket_path:
                transport = httpx.HTTPTransport(uds=socket_path)
                client = httpx.Client(
                    transport=transport, base_url="http://localhost", timeout=timeout
                )
            elif base_url:
                client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)
            else:
                raise ValueError("one of socket_path, base_url or client is required")
        self.client = client
        self.timeout = timeout
        self.endpoint = socket_path or base_url or str(client.base_url)

    @classmethod
    def for_instance(cls, settings: Settings, instance_id: str) -> "VMMClient":
        return cls(
            socket_path=settings.socket_path_for(instance_id),
            timeout=settings.request_timeout_sec,
        )

    def request(
        self, resource_path: str, payload: dict | None = None, method: str = "PUT"
    ) -> ControlResponse:
        path = "/" + resource_path.lstrip("/")
        return send_request(
            self.client,
            method,
            path,
            timeout=self.timeout,
            payload=payload,
        )

    def describe_instance(self) -> ControlResponse:
        return self.request("/", method="GET")

    def close(self) -> None:
        self.client.close()
