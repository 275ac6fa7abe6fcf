from clixen.services.errors import ClixenError, StoreError
from clixen.services.tiers import Tier, WorkflowName, permissions_for, quota_limit_for
from clixen.services.audit_service import AuditAction, AuditLogger, AuditStats
from clixen.services.user_context import (
    AuthorizationContext, ContextCache, InteractionRecorder,
    Resolution, ResolutionStatus, UserContextResolver, build_context,
)
from clixen.services.quota_service import QuotaService
from clixen.services.linking_service import (
    LinkingTokenService, LinkingError, TokenInvalid, TokenExpired,
    TokenAlreadyUsed, AccountAlreadyLinked, ChatAlreadyLinked,
)
from clixen.services.intent_classifier import IntentAction, IntentClassifier, IntentDecision, parse_decision
from clixen.services.permission_gate import DenyReason, GateResult, evaluate
from clixen.services.access_token import (
    AccessTokenError, AccessTokenVerifier, SignedAccessToken, SignedAccessTokenIssuer,
)
from clixen.services.dispatcher import DispatchError, DispatchResult, WorkflowDispatcher, WorkflowNotFound

__all__ = [
    "ClixenError",
    "StoreError",
    "Tier",
    "WorkflowName",
    "permissions_for",
    "quota_limit_for",
    # Audit
    "AuditAction",
    "AuditLogger",
    "AuditStats",
    # User context
    "AuthorizationContext",
    "ContextCache",
    "InteractionRecorder",
    "Resolution",
    "ResolutionStatus",
    "UserContextResolver",
    "build_context",
    "QuotaService",
    # Linking
    "LinkingTokenService",
    "LinkingError",
    "TokenInvalid",
    "TokenExpired",
    "TokenAlreadyUsed",
    "AccountAlreadyLinked",
    "ChatAlreadyLinked",
    # Classification and gating
    "IntentAction",
    "IntentClassifier",
    "IntentDecision",
    "parse_decision",
    "DenyReason",
    "GateResult",
    "evaluate",
    # Signed access tokens
    "AccessTokenError",
    "AccessTokenVerifier",
    "SignedAccessToken",
    "SignedAccessTokenIssuer",
    # Dispatch
    "DispatchError",
    "DispatchResult",
    "WorkflowDispatcher",
    "WorkflowNotFound",
]
