"""Tests for guardrail screening and violation extraction."""

from __future__ import annotations

import pytest

from toolflow.service.errors import GuardrailUnavailable
from toolflow.service.guardrail import (
    DIRECTION_INPUT,
    DIRECTION_OUTPUT,
    GuardrailGate,
    extract_violations,
    severity_from_confidence,
)
from toolflow.service.schemas import GuardrailConfig


def config(**policy) -> GuardrailConfig:
    return GuardrailConfig.model_validate({"policy": policy})


class BrokenBackend:
    async def apply(self, config, content, source):
        raise TimeoutError("guardrail endpoint timed out")


class TestSeverity:
    def test_thresholds(self):
        assert severity_from_confidence(0.95) == "HIGH"
        assert severity_from_confidence(0.8) == "HIGH"
        assert severity_from_confidence(0.7) == "MEDIUM"
        assert severity_from_confidence(0.2) == "LOW"
        assert severity_from_confidence(None) == "HIGH"


class TestExtractViolations:
    def test_flattens_every_policy_category(self):
        assessments = [
            {
                "contentPolicy": {
                    "filters": [
                        {"type": "VIOLENCE", "action": "BLOCKED", "confidence": 0.9},
                        {"type": "HATE", "action": "NONE", "confidence": 0.9},
                    ]
                },
                "wordPolicy": {
                    "customWords": [{"match": "acme", "action": "BLOCKED"}],
                    "managedWordLists": [
                        {"match": "damn", "type": "PROFANITY", "action": "BLOCKED"}
                    ],
                },
                "sensitiveInformationPolicy": {
                    "piiEntities": [{"type": "EMAIL", "action": "ANONYMIZED"}],
                    "regexes": [{"name": "order", "action": "BLOCKED"}],
                },
                "topicPolicy": {
                    "topics": [{"name": "legal", "action": "BLOCKED", "confidence": 0.65}]
                },
            }
        ]

        violations = extract_violations(assessments)

        categories = [v["category"] for v in violations]
        assert categories == [
            "contentPolicy",
            "wordPolicy",
            "wordPolicy",
            "sensitiveInformation",
            "sensitiveInformation",
            "topicPolicy",
        ]
        assert violations[0]["message"] == "Content contains violent material"
        assert violations[3]["action"] == "ANONYMIZED"
        assert violations[5]["severity"] == "MEDIUM"

    def test_empty_assessments(self):
        assert extract_violations([]) == []


class TestGuardrailGate:
    @pytest.mark.asyncio
    async def test_clean_content_passes(self):
        evaluation = await GuardrailGate().evaluate(
            "Order 42 shipped", DIRECTION_OUTPUT, config(blockedWords=["refund"])
        )

        assert evaluation.action == "NONE"
        assert evaluation.filtered_content == "Order 42 shipped"
        assert evaluation.has_violations is False

    @pytest.mark.asyncio
    async def test_blocked_word_uses_direction_messaging(self):
        policy = config(
            blockedWords=["Project X"],
            blockedInputMessaging="Input rejected.",
            blockedOutputsMessaging="Output withheld.",
        )

        inbound = await GuardrailGate().evaluate("tell me about project x", DIRECTION_INPUT, policy)
        outbound = await GuardrailGate().evaluate("Project X ships soon", DIRECTION_OUTPUT, policy)

        assert inbound.filtered_content == "Input rejected."
        assert outbound.filtered_content == "Output withheld."
        assert outbound.intervened is True
        assert outbound.violations[0]["type"] == "CUSTOM_WORD"

    @pytest.mark.asyncio
    async def test_blocked_words_match_whole_words_only(self):
        evaluation = await GuardrailGate().evaluate(
            "The scrapbook is ready", DIRECTION_OUTPUT, config(managedWordLists=["PROFANITY"])
        )

        assert evaluation.intervened is False

    @pytest.mark.asyncio
    async def test_pii_anonymize_and_block(self):
        anonymized = await GuardrailGate().evaluate(
            "SSN 123-45-6789 on file",
            DIRECTION_OUTPUT,
            config(piiEntities=[{"type": "US_SOCIAL_SECURITY_NUMBER", "action": "ANONYMIZE"}]),
        )
        blocked = await GuardrailGate().evaluate(
            "SSN 123-45-6789 on file",
            DIRECTION_OUTPUT,
            config(piiEntities=[{"type": "US_SOCIAL_SECURITY_NUMBER", "action": "BLOCK"}]),
        )

        assert anonymized.filtered_content == "SSN {US_SOCIAL_SECURITY_NUMBER} on file"
        assert anonymized.categories()["sensitiveInformation"][0]["action"] == "ANONYMIZED"
        assert blocked.filtered_content == "Sorry, the model cannot answer this question."

    @pytest.mark.asyncio
    async def test_regex_anonymize(self):
        evaluation = await GuardrailGate().evaluate(
            "Order ORD-12345 is late",
            DIRECTION_OUTPUT,
            config(regexes=[{"name": "ORDER_ID", "pattern": r"ORD-\d+", "action": "ANONYMIZE"}]),
        )

        assert evaluation.filtered_content == "Order {ORDER_ID} is late"

    @pytest.mark.asyncio
    async def test_regex_anonymize_uses_rule_name_literally(self):
        evaluation = await GuardrailGate().evaluate(
            "Order ORD-12345 is late",
            DIRECTION_OUTPUT,
            config(regexes=[{"name": r"ORDER\ID \1", "pattern": r"(ORD)-\d+", "action": "ANONYMIZE"}]),
        )

        assert evaluation.degraded is False
        assert evaluation.filtered_content == r"Order {ORDER\ID \1} is late"

    @pytest.mark.asyncio
    async def test_topic_keywords_block(self):
        evaluation = await GuardrailGate().evaluate(
            "Should I buy this stock?",
            DIRECTION_INPUT,
            config(topics=[{"name": "investment advice", "keywords": ["stock", "crypto"]}]),
        )

        assert evaluation.intervened is True
        assert evaluation.violations[0]["message"] == "Blocked topic: investment advice"

    @pytest.mark.asyncio
    async def test_backend_failure_degrades_when_fail_open(self):
        gate = GuardrailGate(BrokenBackend())

        evaluation = await gate.evaluate("hello", DIRECTION_INPUT, GuardrailConfig())

        assert evaluation.degraded is True
        assert evaluation.action == "NONE"
        assert evaluation.filtered_content == "hello"

    @pytest.mark.asyncio
    async def test_backend_failure_raises_when_fail_closed(self):
        gate = GuardrailGate(BrokenBackend())

        with pytest.raises(GuardrailUnavailable):
            await gate.evaluate("hello", DIRECTION_INPUT, GuardrailConfig(fail_open=False))

    @pytest.mark.asyncio
    async def test_unknown_direction(self):
        with pytest.raises(ValueError):
            await GuardrailGate().evaluate("hello", "sideways", GuardrailConfig())

    def test_evaluation_wire_shape(self):
        from toolflow.storage.models import GuardrailEvaluation

        evaluation = GuardrailEvaluation(
            action="INTERVENED",
            direction="output",
            original_content="raw",
            filtered_content="clean",
            violations=({"category": "wordPolicy", "type": "CUSTOM_WORD"},),
        )

        data = evaluation.to_dict()
        assert data["hasViolations"] is True
        assert data["violationCount"] == 1
        assert data["filteredContent"] == "clean"
        assert list(data["categories"]) == ["wordPolicy"]
