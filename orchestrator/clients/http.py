import json
from dataclasses import dataclass
from typing import Any

import httpx


@dataclass(frozen=True)
class ControlResponse:
    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def fault_message(self) -> str | None:
        if isinstance(self.body, dict):
            message = self.body.get("fault_message")
            if message:
                return str(message)
        if isinstance(self.body, str) and self.body.strip():
            return self.body.strip()[:240]
        return None


class ControlRequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        path: str,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.path = path
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"request failed: {method} {path} ({error_type}: {detail})")


def _decode_body(method: str, path: str, response: httpx.Response) -> Any:
    text = response.text
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError as exc:
        if 200 <= response.status_code < 300:
            raise ControlRequestFailure(
                method=method,
                path=path,
                error_type="MalformedResponse",
                detail=f"HTTP {response.status_code} with non-JSON body: {text.strip()[:240]}",
                status_code=response.status_code,
            ) from exc
        return text


def send_request(
    client: httpx.Client,
    method: str,
    path: str,
    *,
    timeout: float,
    payload: dict | None = None,
) -> ControlResponse:
    """Send one request without retrying.

    Transport errors, timeouts and undecodable success bodies raise
    ControlRequestFailure; any HTTP status is returned to the caller.
    """
    kwargs: dict[str, Any] = {"timeout": timeout}
    if payload is not None:
        kwargs["json"] = payload
    try:
        response = client.request(method, path, **kwargs)
    except httpx.TimeoutException as exc:
        raise ControlRequestFailure(
            method=method,
            path=path,
            error_type=exc.__class__.__name__,
            detail=f"timed out after {timeout}s",
        ) from exc
    except httpx.RequestError as exc:
        raise ControlRequestFailure(
            method=method,
            path=path,
            error_type=exc.__class__.__name__,
            detail=str(exc) or "request error",
        ) from exc
    return ControlResponse(
        status_code=response.status_code, body=_decode_body(method, path, response)
    )
