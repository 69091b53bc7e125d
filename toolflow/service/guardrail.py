"""Guardrail screening for workflow input and model output.

The gate talks to a :class:`GuardrailBackend` that answers in the managed
guardrail service shape::

    {"action": "GUARDRAIL_INTERVENED" | "NONE",
     "outputs": [{"text": ...}],
     "assessments": [{"contentPolicy": ..., "wordPolicy": ...,
                      "sensitiveInformationPolicy": ..., "topicPolicy": ...}]}

and turns the answer into a :class:`GuardrailEvaluation` with a flat list of
violations. :class:`PolicyGuardrailBackend` evaluates a local
:class:`GuardrailPolicy` and is the default backend.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Protocol

from toolflow.logging import get_logger
from toolflow.service.errors import GuardrailUnavailable
from toolflow.service.schemas import GuardrailConfig, GuardrailPolicy
from toolflow.storage.models import GUARDRAIL_INTERVENED, GUARDRAIL_NONE, GuardrailEvaluation

logger = get_logger(__name__)

BACKEND_INTERVENED = "GUARDRAIL_INTERVENED"
BACKEND_NONE = "NONE"

DIRECTION_INPUT = "input"
DIRECTION_OUTPUT = "output"

_CONTENT_POLICY_MESSAGES = {
    "SEXUAL": "Content contains sexual material",
    "VIOLENCE": "Content contains violent material",
    "HATE": "Content contains hate speech",
    "INSULTS": "Content contains insulting language",
    "MISCONDUCT": "Content promotes misconduct",
    "PROMPT_ATTACK": "Content appears to be a prompt injection attack",
}

_PII_PATTERNS = {
    "US_SOCIAL_SECURITY_NUMBER": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "CREDIT_DEBIT_CARD_NUMBER": re.compile(r"\b(?:\d{4}[- ]?){3}\d{1,4}\b"),
    "EMAIL": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "IP_ADDRESS": re.compile(
        r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"
    ),
    "PHONE": re.compile(r"(?<!\d)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"),
}

_MANAGED_WORD_LISTS = {
    "PROFANITY": ("damn", "crap", "shit", "fuck", "bastard", "bullshit"),
}


def severity_from_confidence(confidence: Optional[float]) -> str:
    if confidence is None:
        return "HIGH"
    if confidence >= 0.8:
        return "HIGH"
    if confidence >= 0.6:
        return "MEDIUM"
    return "LOW"


def extract_violations(assessments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten backend assessments into ``{category, type, action, severity, message}``."""
    violations: List[Dict[str, Any]] = []
    for assessment in assessments or []:
        content_policy = assessment.get("contentPolicy") or {}
        for item in content_policy.get("filters") or []:
            if item.get("action") != "BLOCKED":
                continue
            kind = item.get("type", "UNKNOWN")
            violations.append(
                {
                    "category": "contentPolicy",
                    "type": kind,
                    "action": "BLOCKED",
                    "severity": severity_from_confidence(item.get("confidence")),
                    "message": _CONTENT_POLICY_MESSAGES.get(
                        kind, f"Content violates {kind} policy"
                    ),
                }
            )

        word_policy = assessment.get("wordPolicy") or {}
        for item in word_policy.get("customWords") or []:
            if item.get("action") == "BLOCKED":
                violations.append(
                    {
                        "category": "wordPolicy",
                        "type": "CUSTOM_WORD",
                        "action": "BLOCKED",
                        "severity": "HIGH",
                        "message": f"Blocked custom word: {item.get('match')}",
                    }
                )
        for item in word_policy.get("managedWordLists") or []:
            if item.get("action") == "BLOCKED":
                violations.append(
                    {
                        "category": "wordPolicy",
                        "type": item.get("type", "MANAGED_WORD"),
                        "action": "BLOCKED",
                        "severity": "HIGH",
                        "message": f"Blocked word from {item.get('type')} list: {item.get('match')}",
                    }
                )

        sensitive = assessment.get("sensitiveInformationPolicy") or {}
        for item in sensitive.get("piiEntities") or []:
            action = item.get("action")
            if action in ("BLOCKED", "ANONYMIZED"):
                verb = "Blocked" if action == "BLOCKED" else "Anonymized"
                violations.append(
                    {
                        "category": "sensitiveInformation",
                        "type": item.get("type"),
                        "action": action,
                        "severity": "HIGH",
                        "message": f"{verb} {item.get('type')}",
                    }
                )
        for item in sensitive.get("regexes") or []:
            action = item.get("action")
            if action in ("BLOCKED", "ANONYMIZED"):
                verb = "Blocked" if action == "BLOCKED" else "Anonymized"
                violations.append(
                    {
                        "category": "sensitiveInformation",
                        "type": "REGEX",
                        "action": action,
                        "severity": "HIGH",
                        "message": f'{verb} pattern "{item.get("name")}"',
                    }
                )

        topic_policy = assessment.get("topicPolicy") or {}
        for item in topic_policy.get("topics") or []:
            if item.get("action") == "BLOCKED":
                violations.append(
                    {
                        "category": "topicPolicy",
                        "type": item.get("type", "DENY"),
                        "action": "BLOCKED",
                        "severity": severity_from_confidence(item.get("confidence")),
                        "message": f"Blocked topic: {item.get('name')}",
                    }
                )
    return violations


class GuardrailBackend(Protocol):
    async def apply(
        self, config: GuardrailConfig, content: str, source: str
    ) -> Dict[str, Any]:
        """Evaluate ``content`` for ``source`` (INPUT or OUTPUT)."""


def _word_pattern(word: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(word)}(?!\w)", re.IGNORECASE)


class PolicyGuardrailBackend:
    """Evaluates a :class:`GuardrailPolicy` locally."""

    async def apply(
        self, config: GuardrailConfig, content: str, source: str
    ) -> Dict[str, Any]:
        policy: GuardrailPolicy = config.policy
        blocked = False
        filtered = content
        assessment: Dict[str, Any] = {}

        custom_words = [
            {"match": word, "action": "BLOCKED"}
            for word in policy.blocked_words
            if word and _word_pattern(word).search(content)
        ]
        managed_words = [
            {"match": word, "type": list_type, "action": "BLOCKED"}
            for list_type in policy.managed_word_lists
            for word in _MANAGED_WORD_LISTS.get(list_type, ())
            if _word_pattern(word).search(content)
        ]
        if custom_words or managed_words:
            blocked = True
            assessment["wordPolicy"] = {
                "customWords": custom_words,
                "managedWordLists": managed_words,
            }

        pii_entities: List[Dict[str, Any]] = []
        for entity in policy.pii_entities:
            pattern = _PII_PATTERNS[entity.type]
            matches = pattern.findall(filtered)
            if not matches:
                continue
            action = "BLOCKED" if entity.action == "BLOCK" else "ANONYMIZED"
            pii_entities.extend(
                {"type": entity.type, "match": match, "action": action} for match in matches
            )
            if action == "BLOCKED":
                blocked = True
            else:
                filtered = pattern.sub("{" + entity.type + "}", filtered)

        regexes: List[Dict[str, Any]] = []
        for rule in policy.regexes:
            pattern = re.compile(rule.pattern)
            matches = [m.group(0) for m in pattern.finditer(filtered)]
            if not matches:
                continue
            action = "BLOCKED" if rule.action == "BLOCK" else "ANONYMIZED"
            regexes.extend(
                {"name": rule.name, "regex": rule.pattern, "match": match, "action": action}
                for match in matches
            )
            if action == "BLOCKED":
                blocked = True
            else:
                placeholder = "{" + rule.name + "}"
                filtered = pattern.sub(lambda _match: placeholder, filtered)

        if pii_entities or regexes:
            assessment["sensitiveInformationPolicy"] = {
                "piiEntities": pii_entities,
                "regexes": regexes,
            }

        topics: List[Dict[str, Any]] = []
        for topic in policy.topics:
            hits = [kw for kw in topic.keywords if kw and _word_pattern(kw).search(content)]
            if hits:
                topics.append(
                    {
                        "name": topic.name,
                        "type": "DENY",
                        "action": "BLOCKED",
                        "confidence": min(1.0, 0.5 + 0.25 * len(hits)),
                    }
                )
        if topics:
            blocked = True
            assessment["topicPolicy"] = {"topics": topics}

        if not assessment:
            return {"action": BACKEND_NONE, "outputs": [], "assessments": []}

        if blocked:
            message = (
                policy.blocked_input_messaging
                if source == "INPUT"
                else policy.blocked_outputs_messaging
            )
            output = message
        else:
            output = filtered
        return {
            "action": BACKEND_INTERVENED,
            "outputs": [{"text": output}],
            "assessments": [assessment],
        }


class GuardrailGate:
    """Screens workflow input and model output.

    A backend failure degrades to a pass-through evaluation flagged
    ``degraded`` when ``config.fail_open`` is set, and raises
    :class:`GuardrailUnavailable` otherwise.
    """

    def __init__(self, backend: Optional[GuardrailBackend] = None) -> None:
        self.backend = backend or PolicyGuardrailBackend()

    async def evaluate(
        self, content: str, direction: str, config: GuardrailConfig
    ) -> GuardrailEvaluation:
        if direction not in (DIRECTION_INPUT, DIRECTION_OUTPUT):
            raise ValueError(f"unknown guardrail direction '{direction}'")
        source = "INPUT" if direction == DIRECTION_INPUT else "OUTPUT"
        try:
            raw = await self.backend.apply(config, content, source)
        except Exception as exc:
            if not config.fail_open:
                logger.error(
                    "guardrail_unavailable",
                    guardrail_id=config.guardrail_id,
                    direction=direction,
                    error_type=type(exc).__name__,
                )
                raise GuardrailUnavailable(
                    "Guardrail evaluation failed",
                    detail={"guardrailId": config.guardrail_id, "direction": direction},
                ) from exc
            logger.warning(
                "guardrail_degraded",
                guardrail_id=config.guardrail_id,
                direction=direction,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return GuardrailEvaluation(
                action=GUARDRAIL_NONE,
                direction=direction,
                original_content=content,
                filtered_content=content,
                degraded=True,
                guardrail_id=config.guardrail_id,
            )

        intervened = raw.get("action") == BACKEND_INTERVENED
        violations = extract_violations(raw.get("assessments") or [])
        outputs = raw.get("outputs") or []
        filtered = content
        if intervened and outputs:
            filtered = "".join(str(item.get("text", "")) for item in outputs)

        evaluation = GuardrailEvaluation(
            action=GUARDRAIL_INTERVENED if intervened else GUARDRAIL_NONE,
            direction=direction,
            original_content=content,
            filtered_content=filtered,
            violations=tuple(violations),
            guardrail_id=config.guardrail_id,
        )
        logger.info(
            "guardrail_evaluated",
            guardrail_id=config.guardrail_id,
            direction=direction,
            action=evaluation.action,
            violation_count=len(violations),
        )
        return evaluation
