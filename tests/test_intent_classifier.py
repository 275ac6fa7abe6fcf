"""
Intent classifier tests: strict parsing and fail-closed behaviour.
"""

import asyncio
import json

import pytest

from conftest import FakeLLM, make_context
from clixen.services.intent_classifier import (
    RETRY_MESSAGE,
    Attachment,
    IntentAction,
    IntentClassifier,
    IntentDecision,
    ParseError,
    parse_decision,
)


class TestParseDecision:
    def test_route_decision(self):
        raw = json.dumps({
            "action": "route_to_n8n",
            "workflow": "weather_check",
            "parameters": {"location": "Tokyo"},
            "response": "Checking the weather in Tokyo",
            "credits_required": 1,
            "confidence": 0.93,
        })
        decision = parse_decision(raw)
        assert isinstance(decision, IntentDecision)
        assert decision.action is IntentAction.ROUTE_TO_N8N
        assert decision.workflow == "weather_check"
        assert decision.parameters == {"location": "Tokyo"}
        assert decision.confidence == pytest.approx(0.93)
        assert not decision.is_fallback

    def test_credits_default_to_one(self):
        decision = parse_decision('{"action": "route_to_n8n", "workflow": "text_translator"}')
        assert decision.credits_required == 1

    @pytest.mark.parametrize("credits", ["0", "null"])
    def test_unstated_credits_cost_one(self, credits):
        raw = '{"action": "route_to_n8n", "workflow": "weather_check", "credits_required": ' + credits + "}"
        decision = parse_decision(raw)
        assert decision.action is IntentAction.ROUTE_TO_N8N
        assert decision.credits_required == 1

    def test_clarification_message(self):
        decision = parse_decision('{"action": "need_clarification", "clarification": "Which city?"}')
        assert decision.action is IntentAction.NEED_CLARIFICATION
        assert decision.message == "Which city?"

    def test_unknown_fields_are_ignored(self):
        decision = parse_decision('{"action": "direct_response", "response": "hi", "mood": "sunny"}')
        assert decision.message == "hi"

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "   ",
        "not json at all",
        "{broken",
        "[1, 2, 3]",
        '"route_to_n8n"',
        "{}",
        '{"workflow": "weather_check"}',
        '{"action": "launch_missiles"}',
        '{"action": "route_to_n8n"}',
        '{"action": "route_to_n8n", "workflow": "rm_rf"}',
        '{"action": "route_to_n8n", "workflow": "weather_check", "credits_required": 6}',
        '{"action": "route_to_n8n", "workflow": "weather_check", "credits_required": -1}',
        '{"action": "route_to_n8n", "workflow": "weather_check", "parameters": "Tokyo"}',
    ])
    def test_invalid_output_is_a_parse_error(self, raw):
        assert isinstance(parse_decision(raw), ParseError)


class TestClassify:
    @pytest.mark.asyncio
    async def test_returns_parsed_decision(self):
        llm = FakeLLM.returning(action="route_to_n8n", workflow="weather_check", parameters={"location": "Tokyo"})
        classifier = IntentClassifier(llm)
        decision = await classifier.classify("what's the weather in Tokyo", make_context())
        assert decision.action is IntentAction.ROUTE_TO_N8N
        assert decision.workflow == "weather_check"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["nonsense", '{"workflow": "weather_check"}', '{"action": "route_to_n8n"}'])
    async def test_bad_output_fails_closed(self, content):
        classifier = IntentClassifier(FakeLLM(content=content))
        decision = await classifier.classify("hello", make_context())
        assert decision.action is IntentAction.DIRECT_RESPONSE
        assert decision.message == RETRY_MESSAGE
        assert decision.workflow is None
        assert decision.is_fallback

    @pytest.mark.asyncio
    async def test_provider_error_fails_closed(self):
        classifier = IntentClassifier(FakeLLM(error=RuntimeError("boom")))
        decision = await classifier.classify("hello", make_context())
        assert decision.action is IntentAction.DIRECT_RESPONSE
        assert decision.fallback_reason == "provider_error"

    @pytest.mark.asyncio
    async def test_timeout_fails_closed_within_bound(self):
        classifier = IntentClassifier(FakeLLM(content="{}", delay=5), timeout_seconds=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        decision = await classifier.classify("hello", make_context())
        assert loop.time() - started < 1.0
        assert decision.action is IntentAction.DIRECT_RESPONSE
        assert decision.fallback_reason == "timeout"

    def test_prompt_contents(self):
        llm = FakeLLM()
        classifier = IntentClassifier(llm, max_message_tokens=5)
        ctx = make_context(quota_used=3)
        attachment = Attachment(kind="document", file_id="file-1", file_name="report.pdf")
        messages = classifier.build_messages("x" * 1000, attachment, ctx)

        system, user = messages
        assert system["role"] == "system"
        for workflow in ("weather_check", "email_invoice_scanner", "pdf_summarizer", "text_translator", "daily_reminder"):
            assert workflow in system["content"]
        assert '"action"' in system["content"]

        assert "tier: free" in user["content"]
        assert "text_translator, weather_check" in user["content"]
        assert "quota: 3/50" in user["content"]
        assert "report.pdf" in user["content"]
        assert "x" * 21 not in user["content"]
