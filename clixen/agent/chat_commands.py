"""
Chat Commands System — /start, /link, /help, /status, /unlink
Provides a registry-based command dispatch system for the Telegram bot.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from clixen.agent.channel import InboundMessage
from clixen.services.audit_service import AuditLogger
from clixen.services.errors import StoreError
from clixen.services.linking_service import (
    ChatProfile,
    LinkingError,
    LinkingTokenService,
    looks_like_token,
)
from clixen.services.tiers import (
    WORKFLOW_DESCRIPTIONS,
    display_name,
    is_paid,
    minimum_tier_for,
)
from clixen.services.user_context import AuthorizationContext

logger = logging.getLogger(__name__)


@dataclass
class CommandContext:
    """What a command handler gets to see."""
    message: InboundMessage
    auth: Optional[AuthorizationContext] = None  # None when the chat is not linked


@dataclass
class CommandReply:
    text: str
    success: bool = True
    detail: Optional[str] = None  # audit detail override, e.g. a linking error code
    account_id: Optional[str] = None


Handler = Callable[[str, CommandContext], Awaitable[CommandReply]]


@dataclass
class CommandDef:
    """Definition of a chat command."""
    name: str
    description: str
    handler: Optional[Handler] = None
    aliases: List[str] = field(default_factory=list)
    requires_link: bool = True
    hidden: bool = False


class CommandRegistry:
    """Registry for chat commands with dispatch."""

    def __init__(
        self,
        linking: LinkingTokenService,
        audit: AuditLogger,
        *,
        app_url: str = "https://clixen.app",
    ):
        self._linking = linking
        self._audit = audit
        self._app_url = app_url.rstrip("/")
        self._commands: Dict[str, CommandDef] = {}
        self._aliases: Dict[str, str] = {}
        self._register_builtins()

    def _register_builtins(self):
        """Register built-in commands."""
        builtins = [
            CommandDef("start", "Get started or link your account", self._cmd_start, requires_link=False),
            CommandDef("link", "Link this chat with a code from your dashboard", self._cmd_start, requires_link=False),
            CommandDef("help", "Show what I can do", self._cmd_help, aliases=["h"], requires_link=False),
            CommandDef("status", "Show your plan and usage", self._cmd_status),
            CommandDef("unlink", "Disconnect this chat from your account", self._cmd_unlink),
        ]
        for cmd in builtins:
            self.register(cmd)

    def register(self, cmd: CommandDef) -> None:
        """Register a command."""
        self._commands[cmd.name] = cmd
        for alias in cmd.aliases:
            self._aliases[alias] = cmd.name

    def get(self, name: str) -> Optional[CommandDef]:
        """Get a command by name or alias."""
        resolved = self._aliases.get(name, name)
        return self._commands.get(resolved)

    def list_commands(self, include_hidden: bool = False) -> List[CommandDef]:
        cmds = list(self._commands.values())
        if not include_hidden:
            cmds = [c for c in cmds if not c.hidden]
        return sorted(cmds, key=lambda c: c.name)

    def parse(self, text: str) -> Optional[Tuple[str, str]]:
        """
        Parse a command from message text. Returns (command_name, args) or None.

        A bare linking code is treated as `/link <code>`.
        """
        if not text:
            return None
        text = text.strip()
        if looks_like_token(text):
            return ("link", text)
        if not text.startswith("/"):
            return None
        parts = text[1:].split(None, 1)
        if not parts:
            return None
        cmd_name = parts[0].lower().split("@")[0]  # Handle /cmd@botname
        args = parts[1].strip() if len(parts) > 1 else ""
        resolved = self._aliases.get(cmd_name, cmd_name)
        if resolved in self._commands:
            return (resolved, args)
        return None

    @staticmethod
    def is_redemption(name: str, args: str) -> bool:
        return name in ("start", "link") and looks_like_token(args)

    async def execute(self, name: str, args: str, ctx: CommandContext) -> CommandReply:
        cmd = self.get(name)
        if cmd is None or cmd.handler is None:
            return CommandReply(self.unknown_command_text(), success=False, detail="unknown_command")
        if cmd.requires_link and ctx.auth is None:
            return CommandReply(self.linking_instructions(), success=False, detail="not_linked")
        return await cmd.handler(args, ctx)

    # ── Canned text ──

    def linking_instructions(self) -> str:
        return (
            "👋 Welcome to Clixen AI!\n\n"
            "To get started, link this chat to your Clixen account:\n"
            f"1. Sign up or log in at {self._app_url}\n"
            "2. Open your dashboard and click \"Link Telegram Account\"\n"
            "3. Send me the code shown there\n\n"
            "The code is valid for 10 minutes."
        )

    def unknown_command_text(self) -> str:
        return "❓ I don't know that command. Send /help to see what I can do."

    # ── Handlers ──

    async def _cmd_start(self, args: str, ctx: CommandContext) -> CommandReply:
        if looks_like_token(args):
            return await self._redeem(args, ctx.message)
        if args:
            return CommandReply(
                "❌ That doesn't look like a valid linking code. "
                "Codes are 64 characters long; copy it from your dashboard.",
                success=False,
                detail="token_malformed",
            )
        if ctx.auth is None:
            return CommandReply(self.linking_instructions())
        name = ctx.auth.display_name or "there"
        return CommandReply(
            f"👋 Welcome back, {name}!\n\n"
            f"Plan: {display_name(ctx.auth.tier)}\n"
            f"Usage: {ctx.auth.quota_display()} credits\n\n"
            "Just tell me what you need, or send /help for examples.",
            account_id=ctx.auth.account_id,
        )

    async def _redeem(self, token: str, message: InboundMessage) -> CommandReply:
        profile = ChatProfile(
            username=message.username,
            first_name=message.first_name,
            last_name=message.last_name,
        )
        try:
            account_id = await self._linking.redeem(token, message.identity, profile)
        except LinkingError as e:
            logger.info("Linking failed for chat %s: %s", message.identity, e.code)
            return CommandReply(e.user_message, success=False, detail=e.code)
        except StoreError as e:
            logger.error("Linking store failure for chat %s: %s", message.identity, e.detail)
            return CommandReply(StoreError.user_message, success=False, detail=e.code)
        return CommandReply(
            "✅ Your Telegram account is now linked to Clixen AI!\n\n"
            "Try: \"what's the weather in Tokyo\" or send /help.",
            detail="account_linked",
            account_id=account_id,
        )

    async def _cmd_help(self, args: str, ctx: CommandContext) -> CommandReply:
        lines = ["🤖 Clixen AI — automations from chat", ""]
        if ctx.auth is not None:
            lines.append(f"Your plan: {display_name(ctx.auth.tier)}")
            lines.append("")
            for workflow, desc in WORKFLOW_DESCRIPTIONS.items():
                if workflow.value in ctx.auth.permissions:
                    lines.append(f"✅ {desc}")
                else:
                    needed = minimum_tier_for(workflow.value)
                    tier_name = display_name(needed.value) if needed else "a higher"
                    lines.append(f"🔒 {desc} ({tier_name} plan)")
            lines.append("")
        lines.append("Commands:")
        lines += [f"/{c.name} — {c.description}" for c in self.list_commands()]
        lines += ["", "Or just type a request, e.g. \"translate 'good morning' to Spanish\"."]
        account_id = ctx.auth.account_id if ctx.auth else None
        return CommandReply("\n".join(lines), account_id=account_id)

    async def _cmd_status(self, args: str, ctx: CommandContext) -> CommandReply:
        auth = ctx.auth
        lines = [
            "📊 Account Status",
            "",
            f"Plan: {display_name(auth.tier)}",
        ]
        if not is_paid(auth.tier):
            lines.append(f"Trial: {'active' if auth.trial_active else 'expired'}")
        lines.append(f"Usage: {auth.quota_display()} credits")

        stats = await self._audit.user_stats(auth.account_id)
        if stats is not None and stats.total_actions:
            lines.append(
                f"Recent activity: {stats.total_actions} actions, {stats.success_rate}% successful"
            )
            if stats.last_activity:
                lines.append(f"Last activity: {stats.last_activity:%Y-%m-%d %H:%M} UTC")
        return CommandReply("\n".join(lines), account_id=auth.account_id)

    async def _cmd_unlink(self, args: str, ctx: CommandContext) -> CommandReply:
        try:
            await self._linking.unlink(ctx.auth.account_id)
        except StoreError as e:
            logger.error("Unlink failed for %s: %s", ctx.auth.account_id, e.detail)
            return CommandReply(StoreError.user_message, success=False, detail=e.code,
                                account_id=ctx.auth.account_id)
        return CommandReply(
            "🔓 This chat has been unlinked from your Clixen account.\n\n"
            f"You can link again any time from {self._app_url}.",
            account_id=ctx.auth.account_id,
        )
