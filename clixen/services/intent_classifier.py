"""
Intent Classifier — asks the LLM what the user wants and validates the answer.

The LLM's reply is validated against a strict schema. Anything that does not
validate, and any timeout or provider error, becomes a plain direct response
with a generic retry message. A classifier failure never routes to a workflow.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from clixen.services.llm_service import LLMService
from clixen.services.tiers import WORKFLOW_DESCRIPTIONS, WorkflowName
from clixen.services.user_context import AuthorizationContext

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "I'm having trouble understanding right now. Please try rephrasing your request."


class IntentAction(str, Enum):
    DIRECT_RESPONSE = "direct_response"
    NEED_CLARIFICATION = "need_clarification"
    PERMISSION_DENIED = "permission_denied"
    ROUTE_TO_N8N = "route_to_n8n"


@dataclass(frozen=True)
class Attachment:
    """Lightweight attachment descriptor. Never carries file content."""
    kind: str  # document | photo
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class IntentDecision:
    action: IntentAction
    workflow: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    credits_required: int = 1
    confidence: float = 0.0
    fallback_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_reason is not None

    @classmethod
    def fallback(cls, reason: str) -> "IntentDecision":
        return cls(action=IntentAction.DIRECT_RESPONSE, message=RETRY_MESSAGE, fallback_reason=reason)


@dataclass(frozen=True)
class ParseError:
    reason: str


class DecisionSchema(BaseModel):
    """Shape the LLM must return. Extra keys are ignored."""
    model_config = ConfigDict(extra="ignore")

    action: Literal["direct_response", "need_clarification", "permission_denied", "route_to_n8n"]
    workflow: Optional[WorkflowName] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    response: Optional[str] = None
    clarification: Optional[str] = None
    credits_required: int = Field(default=1, ge=1, le=5)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("credits_required", mode="before")
    @classmethod
    def _unset_credits_cost_one(cls, value):
        # 0 and null mean "not stated"
        if value is None or value == 0:
            return 1
        return value

    @model_validator(mode="after")
    def _route_needs_workflow(self):
        if self.action == "route_to_n8n" and self.workflow is None:
            raise ValueError("route_to_n8n requires a workflow")
        return self


def parse_decision(raw: Optional[str]) -> Union[IntentDecision, ParseError]:
    """Validate raw LLM output into an IntentDecision or a ParseError."""
    if not raw or not raw.strip():
        return ParseError("empty response")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return ParseError("invalid json")
    if not isinstance(data, dict):
        return ParseError("json is not an object")
    try:
        schema = DecisionSchema.model_validate(data)
    except ValidationError as e:
        return ParseError(f"schema: {e.error_count()} error(s)")

    action = IntentAction(schema.action)
    if action is IntentAction.NEED_CLARIFICATION:
        message = schema.clarification or schema.response or ""
    else:
        message = schema.response or ""
    return IntentDecision(
        action=action,
        workflow=schema.workflow.value if schema.workflow else None,
        parameters=schema.parameters,
        message=message,
        credits_required=schema.credits_required,
        confidence=schema.confidence,
    )


def _system_prompt() -> str:
    workflows = "\n".join(
        f"- {name.value}: {desc}" for name, desc in WORKFLOW_DESCRIPTIONS.items()
    )
    return f"""You are the intent router for Clixen AI, a Telegram automation assistant.

Decide what the user wants and answer with ONE JSON object, nothing else.

Available workflows:
{workflows}

Response shape:
{{
  "action": "direct_response" | "need_clarification" | "permission_denied" | "route_to_n8n",
  "workflow": "<workflow name, only for route_to_n8n>",
  "parameters": {{"<name>": "<value>"}},
  "response": "<message for the user>",
  "clarification": "<question, only for need_clarification>",
  "credits_required": <integer from 1 to 5, usually 1>,
  "confidence": <number from 0.0 to 1.0>
}}

Rules:
- Use route_to_n8n only when a listed workflow clearly matches and its required inputs are present.
- Use need_clarification when a workflow matches but inputs are missing.
- Use permission_denied when the requested workflow is not in the user's permitted list.
- Use direct_response for greetings, questions and anything no workflow covers.
- Never invent workflow names."""


class IntentClassifier:
    def __init__(
        self,
        llm: LLMService,
        *,
        timeout_seconds: float = 12.0,
        max_message_tokens: int = 500,
    ):
        self._llm = llm
        self._timeout = timeout_seconds
        self._max_message_tokens = max_message_tokens
        self._system = _system_prompt()

    def build_messages(
        self,
        text: str,
        attachment: Optional[Attachment],
        ctx: AuthorizationContext,
    ) -> List[Dict[str, str]]:
        bounded = self._llm.truncate_to_tokens(text or "", self._max_message_tokens)
        lines = [
            "User context:",
            f"- tier: {ctx.tier}",
            f"- permitted workflows: {', '.join(sorted(ctx.permissions)) or 'none'}",
            f"- quota: {ctx.quota_display()}",
            f"- trial active: {'yes' if ctx.trial_active else 'no'}",
        ]
        if attachment:
            lines.append(f"- attachment: {attachment.kind} ({attachment.file_name or attachment.file_id})")
        lines += ["", f"Message: {bounded}"]
        return [
            {"role": "system", "content": self._system},
            {"role": "user", "content": "\n".join(lines)},
        ]

    async def classify(
        self,
        text: str,
        ctx: AuthorizationContext,
        attachment: Optional[Attachment] = None,
    ) -> IntentDecision:
        messages = self.build_messages(text, attachment, ctx)
        try:
            response = await asyncio.wait_for(
                self._llm.complete_with_json(messages),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Intent classification timed out after %.1fs", self._timeout)
            return IntentDecision.fallback("timeout")
        except Exception as e:
            logger.error("Intent classification failed: %s", type(e).__name__)
            return IntentDecision.fallback("provider_error")

        result = parse_decision(response.content)
        if isinstance(result, ParseError):
            logger.warning("Unparseable classifier output (%s): %.120s", result.reason, response.content)
            return IntentDecision.fallback(f"parse_error: {result.reason}")
        return result
