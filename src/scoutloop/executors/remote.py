"""Client for a remote session control plane speaking the Yep Anywhere API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scoutloop.errors import ExecutorRejection, TransientPollError
from scoutloop.executors.base import Decision, PendingInput, PollResult, StartResult
from scoutloop.permissions import SessionOptions

log = logging.getLogger(__name__)

_MARKER_HEADER = {"X-Yep-Anywhere": "true"}


def _session_payload(message: str, options: SessionOptions) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": message, "mode": options.approval_mode}
    if options.rules:
        payload["permissions"] = options.rules.to_payload()
    if options.denied_tools:
        payload["disallowedTools"] = list(options.denied_tools)
    return payload


def parse_metadata(data: dict[str, Any]) -> PollResult:
    """Map the control plane's ownership model onto running/done/error."""
    ownership = data.get("ownership") or {}
    usage = (data.get("session") or {}).get("contextUsage") or {}
    context_usage = usage.get("percentage")

    if ownership.get("owner") == "none" or ownership.get("state") == "idle":
        return PollResult(status="done", context_usage=context_usage)

    request = data.get("pendingInputRequest")
    if ownership.get("state") == "waiting-input" and request:
        return PollResult(
            status="running",
            context_usage=context_usage,
            pending_input=PendingInput(
                kind=request.get("type", "input"),
                target=request.get("toolName"),
                request_id=request.get("id"),
                prompt=request.get("prompt"),
            ),
        )
    return PollResult(status="running", context_usage=context_usage)


class RemoteExecutor:
    """Sessions owned by a control-plane server reached over HTTP."""

    name = "remote"

    def __init__(
        self,
        base_url: str,
        project_id: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=_MARKER_HEADER,
        )

    @property
    def supports_input_response(self) -> bool:
        return True

    @property
    def _sessions_path(self) -> str:
        return f"/api/projects/{self.project_id}/sessions"

    async def close(self) -> None:
        await self._client.aclose()

    async def start(self, message: str, options: SessionOptions) -> StartResult:
        try:
            response = await self._client.post(
                self._sessions_path, json=_session_payload(message, options)
            )
        except httpx.HTTPError as exc:
            raise ExecutorRejection(f"Control plane unreachable: {exc}") from exc

        if response.status_code == 200:
            return StartResult(session_id=response.json()["sessionId"], status="started")
        if response.status_code == 202:
            data = response.json()
            log.info("Session queued at position %s", data.get("position"))
            return StartResult(session_id=data["queueId"], status="queued")
        raise ExecutorRejection(
            f"Start failed ({response.status_code})",
            status_code=response.status_code,
            body=response.text,
        )

    async def resume(
        self, session_id: str, message: str, options: SessionOptions
    ) -> bool:
        try:
            response = await self._client.post(
                f"{self._sessions_path}/{session_id}/resume",
                json=_session_payload(message, options),
            )
        except httpx.HTTPError as exc:
            raise ExecutorRejection(f"Control plane unreachable: {exc}") from exc
        if response.status_code != 200:
            log.info("Resume of %s refused (%s)", session_id, response.status_code)
        return response.status_code == 200

    async def _metadata(self, session_id: str) -> httpx.Response:
        return await self._client.get(f"{self._sessions_path}/{session_id}/metadata")

    async def poll(self, session_id: str) -> PollResult:
        try:
            response = await self._metadata(session_id)
        except httpx.TransportError as exc:
            raise TransientPollError(str(exc)) from exc
        if not response.is_success:
            return PollResult(status="error")
        return parse_metadata(response.json())

    async def respond_to_input(
        self,
        session_id: str,
        request_id: str,
        decision: Decision,
        feedback: str | None = None,
    ) -> bool:
        try:
            response = await self._client.post(
                f"/api/sessions/{session_id}/input",
                json={"requestId": request_id, "response": decision, "feedback": feedback},
            )
        except httpx.HTTPError as exc:
            log.warning("Input response for %s failed: %s", session_id, exc)
            return False
        if not response.is_success:
            return False
        return response.json().get("accepted") is True

    async def cleanup(self, session_id: str) -> None:
        try:
            response = await self._metadata(session_id)
            if not response.is_success:
                return
            ownership = response.json().get("ownership") or {}
            if ownership.get("owner") == "self" and ownership.get("processId"):
                await self._client.post(
                    f"/api/processes/{ownership['processId']}/abort"
                )
        except httpx.HTTPError as exc:
            log.warning("Cleanup of %s failed: %s", session_id, exc)
