from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Protocol

from .decision_context import LeadProfile
from .decision_engine import IntelligentDecision


@dataclass(frozen=True)
class PersonalizationFlags:
    use_name: bool = False
    mention_vehicle: bool = False
    urgent_tone: bool = False


@dataclass(frozen=True)
class ReplyRequest:
    conversation_key: str
    inbound_text: str
    lead_profile: LeadProfile
    flags: PersonalizationFlags


@dataclass(frozen=True)
class ReplyResult:
    message: str
    used_fallback: bool = False
    error_code: str | None = None
    error_message: str | None = None


class ReplyGenerator(Protocol):
    def generate(self, request: ReplyRequest) -> ReplyResult: ...


def approved_flags(decision: IntelligentDecision, lead_profile: LeadProfile) -> PersonalizationFlags:
    return PersonalizationFlags(
        use_name=bool(lead_profile.display_name),
        mention_vehicle=bool(lead_profile.vehicle_interest),
        urgent_tone=decision.urgency_level == "high",
    )


def fallback_reply(request: ReplyRequest) -> str:
    greeting = "Hi"
    if request.flags.use_name and request.lead_profile.display_name:
        greeting = f"Hi {request.lead_profile.display_name.split()[0]}"

    subject = "your vehicle search"
    if request.flags.mention_vehicle and request.lead_profile.vehicle_interest:
        subject = f"the {request.lead_profile.vehicle_interest}"

    if "?" in request.inbound_text:
        body = f"{greeting}, thanks for your question about {subject}. Let me check and get right back to you."
    else:
        body = f"{greeting}, thanks for the update on {subject}. I'll follow up with next steps shortly."

    if request.flags.urgent_tone:
        body += " I'm on it now."
    return body


class TemplateReplyGenerator:
    def generate(self, request: ReplyRequest) -> ReplyResult:
        return ReplyResult(message=fallback_reply(request))


class _ReplyGenerationError(Exception):
    """Internal error raised when the reply generation request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpReplyGenerator:
    """Reply generator backed by the external generation service."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def generate(self, request: ReplyRequest) -> ReplyResult:
        payload = {
            "conversation_key": request.conversation_key,
            "inbound_text": request.inbound_text,
            "lead": {
                "display_name": request.lead_profile.display_name if request.flags.use_name else None,
                "vehicle_interest": request.lead_profile.vehicle_interest if request.flags.mention_vehicle else None,
            },
            "flags": {
                "use_name": request.flags.use_name,
                "mention_vehicle": request.flags.mention_vehicle,
                "urgent_tone": request.flags.urgent_tone,
            },
        }
        try:
            response_data = self._post(payload)
        except _ReplyGenerationError as exc:
            return ReplyResult(
                message=fallback_reply(request),
                used_fallback=True,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        message = ""
        if isinstance(response_data, dict):
            message = str(response_data.get("message") or "").strip()
        if not message:
            return ReplyResult(
                message=fallback_reply(request),
                used_fallback=True,
                error_code="empty_message",
                error_message="Generation service returned no message",
            )
        return ReplyResult(message=message)

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        """Send a POST request to the reply generation endpoint."""
        url = f"{self._base_url}/v1/replies/generate"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ReplyGenerationError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ReplyGenerationError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ReplyGenerationError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _ReplyGenerationError(
                error_code="invalid_response",
                message=f"Invalid JSON response: {exc}",
            ) from exc


def create_reply_generator(*, generator_type: str, base_url: str, api_key: str, timeout_seconds: int) -> ReplyGenerator:
    if generator_type.strip().lower() == "http":
        return HttpReplyGenerator(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)
    return TemplateReplyGenerator()
