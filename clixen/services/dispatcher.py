"""
Workflow Dispatcher — forwards an authorized request to the workflow engine.

The endpoint table is injected at construction. The request body carries
only what the workflow needs: account, chat, workflow, parameters and a
trimmed context. Conversation history and attachment content are never sent.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from clixen.services.access_token import SignedAccessToken
from clixen.services.errors import ClixenError
from clixen.services.user_context import AuthorizationContext

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "❌ Sorry, I couldn't complete that task right now. Please try again in a moment."
SUCCESS_MESSAGE = "✅ Done!"


class DispatchError(ClixenError):
    code = "dispatch_failed"
    user_message = FAILURE_MESSAGE

    def __init__(self, detail: Optional[str] = None, *, status_code: Optional[int] = None):
        super().__init__(detail)
        self.status_code = status_code


class WorkflowNotFound(DispatchError):
    code = "workflow_not_found"


@dataclass(frozen=True)
class MessageMeta:
    """Trimmed description of the inbound message sent alongside the request."""
    message_type: str = "text"
    confidence: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)
    has_attachment: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "message_type": self.message_type,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
            "has_attachment": self.has_attachment,
        }


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    workflow: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def keeps_charge(self) -> bool:
        """True when the engine may have run the workflow, so credits stay spent."""
        return self.success or self.timed_out or (
            self.status_code is not None and self.status_code < 300
        )

    @property
    def error_code(self) -> Optional[str]:
        if self.success:
            return None
        if self.timed_out:
            return "timeout"
        if self.status_code:
            return f"http_{self.status_code}"
        return self.error or DispatchError.code


def endpoints_from_settings(
    base_url: str,
    path_prefix: str,
    workflows,
    overrides: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Build the workflow → URL table: `<base><prefix>/<name>` unless overridden."""
    base = base_url.rstrip("/")
    prefix = "/" + path_prefix.strip("/") if path_prefix.strip("/") else ""
    table = {str(name): f"{base}{prefix}/{name}" for name in workflows}
    for name, target in (overrides or {}).items():
        if target.startswith(("http://", "https://")):
            table[name] = target
        else:
            table[name] = f"{base}/{target.lstrip('/')}"
    return table


class WorkflowDispatcher:
    def __init__(
        self,
        endpoints: Mapping[str, str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 25.0,
        source: str = "telegram-bot",
    ):
        self._endpoints = dict(endpoints)
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout_seconds
        self._source = source

    def has_route(self, workflow: Optional[str]) -> bool:
        return bool(workflow) and workflow in self._endpoints

    def resolve(self, workflow: str) -> str:
        try:
            return self._endpoints[workflow]
        except KeyError:
            raise WorkflowNotFound(f"no endpoint for workflow {workflow!r}") from None

    @staticmethod
    def build_payload(
        workflow: str,
        parameters: Mapping[str, Any],
        ctx: AuthorizationContext,
        meta: MessageMeta,
    ) -> Dict[str, Any]:
        return {
            "account_id": ctx.account_id,
            "chat_id": ctx.chat_id,
            "workflow": workflow,
            "parameters": dict(parameters or {}),
            "context": meta.as_dict(),
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def dispatch(
        self,
        workflow: str,
        parameters: Mapping[str, Any],
        ctx: AuthorizationContext,
        token: SignedAccessToken,
        meta: Optional[MessageMeta] = None,
    ) -> DispatchResult:
        """
        POST the request to the workflow's endpoint.

        Never raises for downstream failures; the returned DispatchResult
        carries the upstream detail for logging and a safe user message.
        """
        url = self.resolve(workflow)
        payload = self.build_payload(workflow, parameters, ctx, meta or MessageMeta())
        headers = {
            "Authorization": f"Bearer {token.token}",
            "X-Clixen-Source": self._source,
            "Content-Type": "application/json",
        }

        started = datetime.utcnow()
        try:
            response = await self._get_client().post(url, json=payload, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException:
            logger.warning("Workflow %s timed out after %.1fs", workflow, self._timeout)
            return DispatchResult(
                success=False, message=FAILURE_MESSAGE, workflow=workflow,
                error="timeout", timed_out=True, duration_ms=_elapsed_ms(started),
            )
        except httpx.HTTPError as e:
            logger.error("Workflow %s request failed: %s", workflow, type(e).__name__)
            return DispatchResult(
                success=False, message=FAILURE_MESSAGE, workflow=workflow,
                error=type(e).__name__, duration_ms=_elapsed_ms(started),
            )

        duration = _elapsed_ms(started)
        if not response.is_success:
            logger.error("Workflow %s returned HTTP %d: %.200s", workflow, response.status_code, response.text)
            return DispatchResult(
                success=False, message=FAILURE_MESSAGE, workflow=workflow,
                status_code=response.status_code, error=response.text[:500], duration_ms=duration,
            )

        body = _json_or_none(response)
        if isinstance(body, dict) and body.get("success") is False:
            logger.error("Workflow %s reported failure: %.200s", workflow, body.get("error") or body.get("message"))
            return DispatchResult(
                success=False, message=FAILURE_MESSAGE, workflow=workflow,
                status_code=response.status_code, error=str(body.get("error") or "workflow_failed"),
                duration_ms=duration,
            )

        message = SUCCESS_MESSAGE
        if isinstance(body, dict) and isinstance(body.get("message"), str) and body["message"].strip():
            message = body["message"]
        return DispatchResult(
            success=True, message=message, workflow=workflow,
            status_code=response.status_code, duration_ms=duration,
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _elapsed_ms(started: datetime) -> int:
    return int((datetime.utcnow() - started).total_seconds() * 1000)
