"""Guardrail filter: the last check on every proposed reply.

Rules are data.  Each ``GuardrailRule`` names what it looks for, how a hit
can be backed by the tenant's configured facts, and what happens when it
is not: the whole decision is replaced by an escalation, or the offending
wording is softened.  Rules run in order and are deterministic, so each
can be tested on its own with ``check_rule``.

Safe actions (escalate, end call, no-op) are skipped only when the
orchestrator wrote the reply itself; a reply written by the language model
is checked whatever its action.  Wording a soften rule cannot rewrite is
dropped with its sentence.  Required disclosures are appended once per
call regardless.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from receptionist.models.decision import SAFE_ACTIONS, Action, Decision, MatchSource
from receptionist.pipeline.classifier import Classification
from receptionist.tenants.schema import TenantConfig

log = logging.getLogger("receptionist.pipeline.guardrails")

ESCALATE = "escalate"
SOFTEN = "soften"

_DIGITS = re.compile(r"\d+(?:\.\d+)?")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


# ── Backing checks ─────────────────────────────────────────────────


def _amount(text: str) -> Optional[float]:
    m = _DIGITS.search(text.replace(",", ""))
    return float(m.group(0)) if m else None


def _price_is_configured(hit: str, reply: str, config: TenantConfig) -> bool:
    amount = _amount(hit)
    if amount is None:
        return False
    for value in config.guardrails.price_facts.values():
        configured = [float(n) for n in _DIGITS.findall(value.replace(",", ""))]
        if amount in configured:
            return True
    return False


def _has_price_facts(hit: str, reply: str, config: TenantConfig) -> bool:
    return bool(config.guardrails.price_facts)


def _time_is_configured(hit: str, reply: str, config: TenantConfig) -> bool:
    lowered = reply.lower()
    return any(v and v.lower() in lowered for v in config.guardrails.time_facts.values())


def _capability_is_configured(hit: str, reply: str, config: TenantConfig) -> bool:
    claim = " ".join(hit.lower().replace("-", " ").split())
    capabilities = {" ".join(c.replace("-", " ").split()) for c in config.guardrails.capabilities}
    if claim in capabilities:
        return True
    aliases = {"24/7", "24 7", "twenty four seven", "24 hours a day", "around the clock", "always available"}
    return claim in aliases and bool(aliases & capabilities)


# ── Rules ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GuardrailRule:
    """One declarative check.

    ``kind`` is ``"reply"`` (pattern searched in the proposed reply) or
    ``"signal"`` (fires when the classifier raised ``signal``).
    """

    name: str
    kind: str
    on_violation: str
    backed: Callable[[str, str, TenantConfig], bool]
    pattern: Optional[re.Pattern] = None
    signal: str = ""
    # Empty means every action.
    actions: frozenset[Action] = frozenset()
    replacements: tuple[tuple[re.Pattern, str], ...] = ()

    def applies_to(self, action: Action) -> bool:
        return not self.actions or action in self.actions


@dataclass
class Violation:
    rule: str
    matched: str
    on_violation: str


def _re(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


_SOFTEN_TIME = (
    (_re(r"\bwe(?:'ll| will) be there\b"), "we can schedule a visit"),
    (_re(r"\b(?:the |a )?technician will (?:come|arrive)\b"), "a technician can come"),
    (_re(r"\b(?:we're|we are) on (?:our|the) way\b"), "we can get you scheduled"),
    (_re(r"\b(?:is|are) on (?:our|the) way\b"), "can be scheduled"),
    (_re(r"\btoday by \d{1,2}(?::\d{2})?\s*(?:[ap]\.?m\.?)?"), "at the earliest available time"),
    (_re(r"\bwithin (?:the|an|one|\d+) hours?\b"), "as soon as our schedule allows"),
    (_re(r"\bin (?:\d+|a few) minutes\b"), "as soon as our schedule allows"),
    (_re(r"\barrive\b"), "schedule"),
)

_SOFTEN_CAPABILITY = (
    (_re(r"\b24/7\b|\btwenty[- ]four seven\b|\b24 hours a day\b|\baround the clock\b|\balways available\b"),
     "during business hours"),
    (_re(r"\bemergency service\b"), "service"),
)

DEFAULT_RULES: tuple[GuardrailRule, ...] = (
    GuardrailRule(
        name="unbacked_price",
        kind="reply",
        on_violation=ESCALATE,
        pattern=_re(r"\$\s?\d[\d,]*(?:\.\d{1,2})?|\b\d[\d,]*(?:\.\d{1,2})?\s?(?:dollars|bucks|usd)\b"),
        backed=_price_is_configured,
    ),
    GuardrailRule(
        name="pricing_question_without_prices",
        kind="signal",
        on_violation=ESCALATE,
        signal="pricing",
        backed=_has_price_facts,
    ),
    GuardrailRule(
        name="price_language_without_prices",
        kind="reply",
        on_violation=ESCALATE,
        pattern=_re(r"\b(?:cost|costs|price|prices|pricing|fee|fees|charge|charges|estimate|quote)\b"),
        backed=_has_price_facts,
        actions=frozenset({Action.ANSWER_WITH_KNOWLEDGE}),
    ),
    GuardrailRule(
        name="time_commitment",
        kind="reply",
        on_violation=SOFTEN,
        pattern=_re(
            r"\bwe(?:'ll| will) be there\b|\btechnician will (?:come|arrive)\b|\bon (?:our|the) way\b"
            r"|\btoday by \d{1,2}|\bwithin (?:the|an|one|\d+) hours?\b|\bin (?:\d+|a few) minutes\b|\barrive\b"
        ),
        backed=_time_is_configured,
        replacements=_SOFTEN_TIME,
    ),
    GuardrailRule(
        name="capability_claim",
        kind="reply",
        on_violation=SOFTEN,
        pattern=_re(
            r"\b24/7\b|\btwenty[- ]four seven\b|\b24 hours a day\b|\baround the clock\b"
            r"|\balways available\b|\bemergency service\b"
        ),
        backed=_capability_is_configured,
        replacements=_SOFTEN_CAPABILITY,
    ),
)


def is_own_script(decision: Decision) -> bool:
    """A safe action whose text came from the orchestrator, not the model."""
    return decision.action in SAFE_ACTIONS and decision.match_source != MatchSource.FALLBACK_LLM


def check_rule(
    rule: GuardrailRule,
    decision: Decision,
    config: TenantConfig,
    classification: Optional[Classification] = None,
) -> Optional[Violation]:
    """Evaluate one rule against a decision.  Returns the violation or None."""
    if is_own_script(decision) or not rule.applies_to(decision.action):
        return None
    reply = decision.reply_text or ""

    if rule.kind == "signal":
        if classification is None or not classification.has(rule.signal):
            return None
        if rule.backed(rule.signal, reply, config):
            return None
        return Violation(rule.name, rule.signal, rule.on_violation)

    for m in rule.pattern.finditer(reply):
        if not rule.backed(m.group(0), reply, config):
            return Violation(rule.name, m.group(0), rule.on_violation)
    return None


# ── Filter ─────────────────────────────────────────────────────────


@dataclass
class GuardrailResult:
    decision: Decision
    violations: list[Violation] = field(default_factory=list)
    disclosures: list[str] = field(default_factory=list)  # ids appended this turn

    @property
    def changed(self) -> bool:
        return bool(self.violations or self.disclosures)

    def to_trace(self) -> dict:
        return {
            "violations": [{"rule": v.rule, "matched": v.matched, "onViolation": v.on_violation}
                           for v in self.violations],
            "disclosures": self.disclosures,
        }


def _unbacked_hit(rule: GuardrailRule, text: str, config: TenantConfig) -> bool:
    return any(not rule.backed(m.group(0), text, config) for m in rule.pattern.finditer(text))


def _soften(text: str, rule: GuardrailRule, config: TenantConfig) -> str:
    for pattern, replacement in rule.replacements:
        text = pattern.sub(replacement, text)
    if not _unbacked_hit(rule, text, config):
        return text
    kept = [s for s in _SENTENCE_END.split(text) if s and not _unbacked_hit(rule, s, config)]
    return " ".join(kept) or config.escalation.clarifying_question


def apply_guardrails(
    decision: Decision,
    config: TenantConfig,
    classification: Optional[Classification] = None,
    already_disclosed: Iterable[str] = (),
    rules: tuple[GuardrailRule, ...] = DEFAULT_RULES,
) -> GuardrailResult:
    result = GuardrailResult(decision=decision)

    for rule in rules:
        violation = check_rule(rule, result.decision, config, classification)
        if violation is None:
            continue
        result.violations.append(violation)
        log.warning("Guardrail %s triggered (action=%s matched=%r)",
                    rule.name, result.decision.action.value, violation.matched)
        if rule.on_violation == ESCALATE:
            result.decision = Decision(
                action=Action.ESCALATE_TO_HUMAN,
                reply_text=config.escalation.price_message,
                match_source=decision.match_source,
                confidence=decision.confidence,
                scenario_id=decision.scenario_id,
                transfer_target=config.escalation.transfer_target,
                reason=f"guardrail:{rule.name}",
            )
            break
        softened = _soften(result.decision.reply_text, rule, config)
        result.decision = result.decision.model_copy(update={"reply_text": softened})

    disclosed = set(already_disclosed)
    appended = []
    for disclosure in config.guardrails.required_disclosures:
        if disclosure.action == result.decision.action and disclosure.id not in disclosed:
            appended.append(disclosure.text)
            result.disclosures.append(disclosure.id)
            disclosed.add(disclosure.id)
    if appended:
        text = " ".join([result.decision.reply_text, *appended]).strip()
        result.decision = result.decision.model_copy(update={"reply_text": text})

    return result
