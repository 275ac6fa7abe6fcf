"""
Message Pipeline — one inbound Telegram message in, exactly one reply out.

    resolve sender → (linking | command | free text)
    free text → classify → gate → {reply | reserve quota → sign → dispatch}

Every decision point writes an audit record. Every failure is converted to a
safe reply at the step where it happens; `handle` always sends something back.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from telegram import Bot

from clixen.agent.channel import InboundMessage
from clixen.agent.chat_commands import CommandContext, CommandRegistry
from clixen.agent.structured_logging import (
    generate_request_id,
    pipeline_log,
    set_request_context,
)
from clixen.agent.telegram_responder import TelegramResponder
from clixen.config import Settings
from clixen.services.access_token import AccessTokenVerifier, SignedAccessTokenIssuer
from clixen.services.audit_service import (
    AuditAction,
    AuditLogger,
    SYSTEM_ACCOUNT,
    UNKNOWN_ACCOUNT,
)
from clixen.services.dispatcher import (
    FAILURE_MESSAGE,
    DispatchResult,
    MessageMeta,
    WorkflowDispatcher,
    endpoints_from_settings,
)
from clixen.services.errors import StoreError
from clixen.services.intent_classifier import IntentAction, IntentClassifier, IntentDecision
from clixen.services.linking_service import LinkingTokenService
from clixen.services.llm_service import LLMService
from clixen.services.permission_gate import DenyReason, GateResult, evaluate
from clixen.services.quota_service import QuotaService
from clixen.services.tiers import WorkflowName
from clixen.services.user_context import (
    AuthorizationContext,
    ContextCache,
    InteractionRecorder,
    ResolutionStatus,
    UserContextResolver,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR = "❌ Something went wrong on our side. Please try again in a moment."


@dataclass
class PipelineOutcome:
    """What happened to a message; returned for tests and the webhook log line."""
    stage: str
    reply: str
    account_id: Optional[str] = None
    decision: Optional[IntentDecision] = None
    gate: Optional[GateResult] = None
    dispatch: Optional[DispatchResult] = None
    replied: bool = False


class MessagePipeline:
    def __init__(
        self,
        *,
        resolver: UserContextResolver,
        recorder: InteractionRecorder,
        commands: CommandRegistry,
        classifier: IntentClassifier,
        quota: QuotaService,
        issuer: SignedAccessTokenIssuer,
        dispatcher: WorkflowDispatcher,
        audit: AuditLogger,
        responder: TelegramResponder,
        upgrade_url: str = "https://clixen.app/subscription",
    ):
        self.resolver = resolver
        self.recorder = recorder
        self.commands = commands
        self.classifier = classifier
        self.quota = quota
        self.issuer = issuer
        self.dispatcher = dispatcher
        self.audit = audit
        self.responder = responder
        self.upgrade_url = upgrade_url

    async def handle(self, message: InboundMessage) -> PipelineOutcome:
        started = time.monotonic()
        set_request_context(request_id=generate_request_id(), chat_id=message.chat_id)
        try:
            outcome = await self._process(message, started)
        except Exception as e:
            pipeline_log.exception("Unhandled pipeline error", {"error": type(e).__name__})
            await self.audit.record(
                SYSTEM_ACCOUNT,
                message.identity,
                AuditAction.SYSTEM_ERROR,
                "pipeline_error",
                {"error": type(e).__name__, "message_type": message.message_type},
                success=False,
                duration_ms=_elapsed_ms(started),
            )
            outcome = PipelineOutcome("error", GENERIC_ERROR)

        outcome.replied = await self.responder.send_message(message.chat_id, outcome.reply)
        pipeline_log.info(
            "Message handled",
            {"stage": outcome.stage, "replied": outcome.replied, "duration_ms": _elapsed_ms(started)},
        )
        return outcome

    async def _process(self, message: InboundMessage, started: float) -> PipelineOutcome:
        parsed = self.commands.parse(message.text)

        # Linking codes are redeemed before the sender has an account to resolve
        if parsed and self.commands.is_redemption(*parsed):
            return await self._run_command(parsed, message, None, started)

        resolution = await self.resolver.resolve(message.identity)
        if not resolution.ok:
            if resolution.status is ResolutionStatus.UNLINKED and parsed:
                cmd = self.commands.get(parsed[0])
                if cmd is not None and not cmd.requires_link:
                    return await self._run_command(parsed, message, None, started)
            await self.audit.record(
                resolution.account_id or UNKNOWN_ACCOUNT,
                message.identity,
                AuditAction.AUTH_EVENT,
                "user_validation_failed",
                {"status": resolution.status.value, "message_type": message.message_type},
                success=False,
                duration_ms=_elapsed_ms(started),
            )
            return PipelineOutcome(resolution.status.value, resolution.message, account_id=resolution.account_id)

        ctx = resolution.context
        set_request_context(account_id=ctx.account_id)
        await self.recorder.record(ctx.account_id)

        if parsed:
            return await self._run_command(parsed, message, ctx, started)
        if message.is_command:
            await self.audit.record(
                ctx.account_id, message.identity, AuditAction.TELEGRAM_COMMAND,
                message.text.split()[0][:64], {"result": "unknown_command"},
                success=False, duration_ms=_elapsed_ms(started),
            )
            return PipelineOutcome("command", self.commands.unknown_command_text(), account_id=ctx.account_id)

        return await self._handle_request(message, ctx, started)

    async def _run_command(
        self,
        parsed: Tuple[str, str],
        message: InboundMessage,
        ctx: Optional[AuthorizationContext],
        started: float,
    ) -> PipelineOutcome:
        name, args = parsed
        reply = await self.commands.execute(name, args, CommandContext(message=message, auth=ctx))
        account_id = reply.account_id or (ctx.account_id if ctx else None)
        await self.audit.record(
            account_id or UNKNOWN_ACCOUNT,
            message.identity,
            AuditAction.TELEGRAM_COMMAND,
            f"/{name}",
            {"result": reply.detail or "ok", "has_args": bool(args)},
            success=reply.success,
            duration_ms=_elapsed_ms(started),
        )
        return PipelineOutcome("command", reply.text, account_id=account_id)

    async def _handle_request(
        self,
        message: InboundMessage,
        ctx: AuthorizationContext,
        started: float,
    ) -> PipelineOutcome:
        decision = await self.classifier.classify(message.text, ctx, message.attachment)
        if decision.is_fallback:
            await self.audit.record(
                ctx.account_id, message.identity, AuditAction.INTENT_CLASSIFICATION,
                "classification_failed", {"reason": decision.fallback_reason},
                success=False, duration_ms=_elapsed_ms(started),
            )
            return PipelineOutcome("classification_failed", decision.message, ctx.account_id, decision)

        gate = evaluate(decision, ctx, upgrade_url=self.upgrade_url)
        if not gate.allowed:
            await self._audit_denial(message, ctx, decision, gate.reason, started)
            return PipelineOutcome("denied", gate.message, ctx.account_id, decision, gate)

        if decision.action is IntentAction.ROUTE_TO_N8N:
            return await self._route(message, ctx, decision, gate, started)

        reply = decision.message or self._default_reply(decision.action)
        await self.audit.record(
            ctx.account_id, message.identity, AuditAction.TELEGRAM_MESSAGE,
            decision.action.value, {"confidence": decision.confidence},
            success=True, duration_ms=_elapsed_ms(started),
        )
        return PipelineOutcome(decision.action.value, reply, ctx.account_id, decision, gate)

    async def _route(
        self,
        message: InboundMessage,
        ctx: AuthorizationContext,
        decision: IntentDecision,
        gate: GateResult,
        started: float,
    ) -> PipelineOutcome:
        workflow = decision.workflow
        if not self.dispatcher.has_route(workflow):
            await self.audit.record(
                ctx.account_id, message.identity, AuditAction.N8N_WORKFLOW,
                workflow, {"error": "workflow_not_found"},
                success=False, duration_ms=_elapsed_ms(started),
            )
            return PipelineOutcome("dispatch_failed", FAILURE_MESSAGE, ctx.account_id, decision, gate)

        await self.responder.send_typing(message.chat_id)

        credits = decision.credits_required
        try:
            reserved = await self.quota.reserve(ctx.account_id, credits, chat_id=ctx.chat_id)
        except StoreError as e:
            await self.audit.record(
                ctx.account_id, message.identity, AuditAction.QUOTA_EVENT,
                "reserve_failed", {"workflow": workflow, "error": e.code},
                success=False, duration_ms=_elapsed_ms(started),
            )
            return PipelineOutcome("error", StoreError.user_message, ctx.account_id, decision, gate)

        if not reserved:
            # The snapshot allowed it but a concurrent message used the last credits
            await self._audit_denial(message, ctx, decision, DenyReason.QUOTA_EXCEEDED, started)
            denied = GateResult(
                allowed=False,
                reason=DenyReason.QUOTA_EXCEEDED,
                message=f"📊 You've reached your automation limit.\n\nUpgrade for more at {self.upgrade_url}",
            )
            return PipelineOutcome("denied", denied.message, ctx.account_id, decision, denied)

        token = self.issuer.issue(ctx, workflow, decision.parameters)
        meta = MessageMeta(
            message_type=message.message_type,
            confidence=decision.confidence,
            timestamp=datetime.utcnow(),
            has_attachment=message.attachment is not None,
        )
        result = await self.dispatcher.dispatch(workflow, decision.parameters, ctx, token, meta)

        refunded = False
        if not result.keeps_charge:
            try:
                refunded = await self.quota.refund(ctx.account_id, credits, chat_id=ctx.chat_id)
            except StoreError as e:
                logger.error("Quota refund failed for %s: %s", ctx.account_id, e.detail)

        await self.audit.record(
            ctx.account_id,
            message.identity,
            AuditAction.N8N_WORKFLOW,
            workflow,
            {
                "credits": credits,
                "refunded": refunded,
                "status_code": result.status_code,
                "error": result.error_code,
                "workflow_ms": result.duration_ms,
                "parameter_keys": sorted(decision.parameters),
            },
            success=result.success,
            duration_ms=_elapsed_ms(started),
        )
        stage = "dispatched" if result.success else "dispatch_failed"
        return PipelineOutcome(stage, result.message, ctx.account_id, decision, gate, result)

    async def _audit_denial(
        self,
        message: InboundMessage,
        ctx: AuthorizationContext,
        decision: IntentDecision,
        reason: DenyReason,
        started: float,
    ) -> None:
        await self.audit.record(
            ctx.account_id,
            message.identity,
            AuditAction.PERMISSION_CHECK,
            "permission_denied",
            {
                "reason": reason.value,
                "workflow": decision.workflow,
                "tier": ctx.tier,
                "quota_used": ctx.quota_used,
                "quota_limit": ctx.quota_limit,
            },
            success=False,
            duration_ms=_elapsed_ms(started),
        )

    def _default_reply(self, action: IntentAction) -> str:
        if action is IntentAction.NEED_CLARIFICATION:
            return "🤔 Could you tell me a bit more about what you need?"
        if action is IntentAction.PERMISSION_DENIED:
            return f"🔒 That isn't available on your plan. Upgrade at {self.upgrade_url}"
        return "👍 Got it."


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# ── Composition root ──

@dataclass
class ClixenRuntime:
    """Everything the web app needs, built once at startup."""
    pipeline: MessagePipeline
    linking: LinkingTokenService
    audit: AuditLogger
    verifier: AccessTokenVerifier
    dispatcher: WorkflowDispatcher


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker,
    *,
    bot: Optional[Bot] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    llm: Optional[LLMService] = None,
) -> ClixenRuntime:
    store_timeout = settings.store_timeout_seconds
    app_url = settings.app_url.rstrip("/")
    cache = ContextCache(settings.context_cache_ttl_seconds) if settings.context_cache_ttl_seconds > 0 else None

    audit = AuditLogger(session_factory, timeout_seconds=store_timeout)
    linking = LinkingTokenService(
        session_factory,
        audit,
        ttl_minutes=settings.linking_token_ttl_minutes,
        timeout_seconds=store_timeout,
        cache=cache,
    )
    llm = llm or LLMService(
        api_key=settings.openai_api_key,
        model=settings.classifier_model,
        temperature=settings.classifier_temperature,
        max_tokens=settings.classifier_max_tokens,
        timeout=settings.classifier_timeout_seconds,
        max_retries=settings.classifier_max_retries,
    )
    dispatcher = WorkflowDispatcher(
        endpoints_from_settings(
            settings.n8n_base_url,
            settings.workflow_path_prefix,
            [w.value for w in WorkflowName],
            settings.workflow_endpoints,
        ),
        client=http_client,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    issuer = SignedAccessTokenIssuer(
        settings.signing_secret,
        issuer=settings.access_token_issuer,
        audience=settings.access_token_audience,
        ttl_seconds=settings.access_token_ttl_seconds,
        algorithm=settings.jwt_algorithm,
    )
    verifier = AccessTokenVerifier(
        settings.signing_secret,
        issuer=settings.access_token_issuer,
        audience=settings.access_token_audience,
        algorithm=settings.jwt_algorithm,
    )

    pipeline = MessagePipeline(
        resolver=UserContextResolver(
            session_factory, app_url=app_url, timeout_seconds=store_timeout, cache=cache,
        ),
        recorder=InteractionRecorder(session_factory, timeout_seconds=store_timeout),
        commands=CommandRegistry(linking, audit, app_url=app_url),
        classifier=IntentClassifier(
            llm,
            timeout_seconds=settings.classifier_timeout_seconds,
            max_message_tokens=settings.classifier_max_message_tokens,
        ),
        quota=QuotaService(session_factory, timeout_seconds=store_timeout, cache=cache),
        issuer=issuer,
        dispatcher=dispatcher,
        audit=audit,
        responder=TelegramResponder(bot, timeout_seconds=settings.telegram_send_timeout_seconds),
        upgrade_url=f"{app_url}/subscription",
    )
    return ClixenRuntime(pipeline=pipeline, linking=linking, audit=audit, verifier=verifier, dispatcher=dispatcher)
