"""
Workshop Discovery
Evidence Interpreter.

The interpreter is the only component that reads evidence "semantically". It
PROPOSES checklist transitions and findings; it never writes. The checklist
state machine validates every proposal against stored item state before
applying anything.

    EvidenceInterpreter        - abstract boundary (inject any implementation)
    LLMEvidenceInterpreter     - gateway + prompt registry implementation

Output is normalised into ``InterpreterProposal``; unparseable model output
raises ``MalformedInterpreterOutputError`` and provider failures raise
``InterpreterUnavailableError``.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from discovery.core.exceptions import (
    InterpreterUnavailableError,
    MalformedInterpreterOutputError,
)

logger = logging.getLogger(__name__)

MODE_INCREMENTAL = "incremental"
MODE_REANALYSIS = "reanalysis"

RESET_CONTRADICTION = "contradiction"
RESET_INSUFFICIENT_EVIDENCE = "insufficient_evidence"
RESET_KINDS = {RESET_CONTRADICTION, RESET_INSUFFICIENT_EVIDENCE}


# ── Proposal types ───────────────────────────────────────────────────────────

@dataclass
class ObtainProposal:
    """Interpreter claims ``item_id`` now has a concrete value."""
    item_id: int | None
    obtained_text: str
    confidence: str
    quote: str = ""

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "obtained_text": self.obtained_text,
            "confidence": self.confidence,
            "quote": self.quote,
        }


@dataclass
class ResetProposal:
    """Interpreter claims the recorded value of ``item_id`` no longer stands."""
    item_id: int | None
    reason: str
    quote: str = ""
    kind: str = RESET_CONTRADICTION

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "reason": self.reason,
            "quote": self.quote,
            "kind": self.kind,
        }


@dataclass
class FindingProposal:
    topic: str
    finding_type: str = "other"
    risk_level: str = "medium"
    details: str = ""
    analysis: str = ""
    recommendation: str = ""
    best_practice: str = ""
    source_quote: str = ""

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "finding_type": self.finding_type,
            "risk_level": self.risk_level,
            "details": self.details,
            "analysis": self.analysis,
            "recommendation": self.recommendation,
            "best_practice": self.best_practice,
            "source_quote": self.source_quote,
        }


@dataclass
class InterpreterProposal:
    """Everything one interpreter invocation proposes."""
    to_obtain: list[ObtainProposal] = field(default_factory=list)
    to_reset: list[ResetProposal] = field(default_factory=list)
    findings: list[FindingProposal] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_obtain or self.to_reset or self.findings)

    def to_dict(self) -> dict:
        return {
            "to_obtain": [p.to_dict() for p in self.to_obtain],
            "to_reset": [p.to_dict() for p in self.to_reset],
            "findings": [f.to_dict() for f in self.findings],
        }


# ── Boundary ─────────────────────────────────────────────────────────────────

class EvidenceInterpreter(ABC):
    """Abstract interpreter. Implementations must be side-effect free on item state."""

    @abstractmethod
    def propose(
        self,
        *,
        outstanding_items: list[dict],
        obtained_items: list[dict],
        evidence_text: str,
        prior_evidence: str = "",
        session_context: dict | None = None,
        mode: str = MODE_INCREMENTAL,
    ) -> InterpreterProposal:
        """
        Propose transitions for the given items.

        Args:
            outstanding_items: Items currently missing ({id, item_number, text, category}).
            obtained_items: Items currently obtained (also carry obtained_text).
            evidence_text: New evidence (incremental) or the full corpus (reanalysis).
            prior_evidence: Earlier evidence, context only.
            session_context: Workshop / session metadata.
            mode: "incremental" or "reanalysis".
        """
        ...


# ── JSON extraction ──────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json)?\s*|```", re.IGNORECASE)


def extract_json(raw: str, *, expect=dict):
    """
    Parse the JSON payload out of an LLM answer.

    Strips markdown fences, then falls back to the outermost ``{...}`` /
    ``[...]`` span when the model wrapped the payload in prose.

    Raises:
        MalformedInterpreterOutputError: nothing parseable of the expected type.
    """
    text = _FENCE_RE.sub("", raw or "").strip()
    opener, closer = ("{", "}") if expect is dict else ("[", "]")

    candidates = [text]
    start, end = text.find(opener), text.rfind(closer)
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, expect):
            return data

    raise MalformedInterpreterOutputError(
        f"Expected a JSON {expect.__name__} in interpreter output",
        raw_excerpt=(raw or "")[:300],
    )


def _as_int(value):
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return " | ".join(str(v) for v in value if v)
    return str(value).strip()


def _first(entry: dict, *keys):
    for key in keys:
        if entry.get(key) not in (None, "", []):
            return entry[key]
    return None


def _entries(data: dict, *keys) -> list:
    value = _first(data, *keys)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedInterpreterOutputError(
            f"Expected a list under {keys[0]!r}, got {type(value).__name__}",
            raw_excerpt=repr(value)[:300],
        )
    return value


def parse_proposal(data: dict, *, mode: str = MODE_INCREMENTAL) -> InterpreterProposal:
    """
    Normalise an interpreter JSON object into an ``InterpreterProposal``.

    Accepts both the incremental key set (obtained_items / items_to_reset /
    additional_findings) and the reanalysis key set (items_to_obtain /
    items_to_reset_to_missing / stray_topics). Entries that are not objects are
    skipped; semantic validation is left to the state machine.

    Raises:
        MalformedInterpreterOutputError: a proposal key holds something other
            than a list.
    """
    default_kind = RESET_CONTRADICTION if mode == MODE_INCREMENTAL else RESET_INSUFFICIENT_EVIDENCE
    proposal = InterpreterProposal()

    for entry in _entries(data, "to_obtain", "obtained_items", "items_to_obtain"):
        if not isinstance(entry, dict):
            continue
        proposal.to_obtain.append(ObtainProposal(
            item_id=_as_int(entry.get("item_id")),
            obtained_text=_text(entry.get("obtained_text")),
            confidence=_text(entry.get("confidence")).lower(),
            quote=_text(_first(entry, "quote", "source_quote", "evidence_quote")),
        ))

    for entry in _entries(data, "to_reset", "items_to_reset", "items_to_reset_to_missing"):
        if not isinstance(entry, dict):
            continue
        proposal.to_reset.append(ResetProposal(
            item_id=_as_int(entry.get("item_id")),
            reason=_text(entry.get("reason")),
            quote=_text(_first(entry, "quote", "contradiction_quote", "evidence_quote")),
            kind=_text(entry.get("kind")).lower() or default_kind,
        ))

    for entry in _entries(data, "findings", "additional_findings", "stray_topics"):
        if not isinstance(entry, dict):
            continue
        topic = _text(entry.get("topic"))
        if not topic:
            continue
        proposal.findings.append(FindingProposal(
            topic=topic[:300],
            finding_type=_text(entry.get("finding_type")) or "other",
            risk_level=_text(_first(entry, "risk_level", "sap_risk_level")).lower() or "medium",
            details=_text(_first(entry, "details", "context")),
            analysis=_text(_first(entry, "analysis", "sap_analysis", "why_important")),
            recommendation=_text(_first(entry, "recommendation", "sap_recommendation")),
            best_practice=_text(_first(entry, "best_practice", "sap_best_practice")),
            source_quote=_text(_first(entry, "source_quote", "source_quotes")),
        ))

    return proposal


# ── LLM-backed implementation ────────────────────────────────────────────────

def _format_missing(items: list[dict]) -> str:
    if not items:
        return "(None)"
    return "\n".join(f"[ID:{i['id']}] {i['text']}" for i in items)


def _format_obtained(items: list[dict]) -> str:
    if not items:
        return "(None)"
    return "\n".join(
        f"[ID:{i['id']}] {i['text']}\n   Previously recorded: \"{i.get('obtained_text') or ''}\""
        for i in items
    )


def _format_all(outstanding: list[dict], obtained: list[dict]) -> str:
    rows = sorted(
        [(i, "missing") for i in outstanding] + [(i, "obtained") for i in obtained],
        key=lambda pair: pair[0].get("item_number") or 0,
    )
    lines = []
    for item, status in rows:
        line = f"[ID:{item['id']}] [Current: {status}] {item['text']}"
        if status == "obtained":
            line += f"\n   Recorded: \"{item.get('obtained_text') or ''}\""
        lines.append(line)
    return "\n".join(lines) or "(None)"


class LLMEvidenceInterpreter(EvidenceInterpreter):
    """Interpreter backed by the LLM gateway."""

    PURPOSE = "evidence_interpreter"

    def __init__(self, gateway, prompt_registry, *, model: str | None = None,
                 max_retries: int = 3, max_tokens: int = 6000, prompt_version: str = "v1"):
        self.gateway = gateway
        self.prompt_registry = prompt_registry
        self.model = model
        self.max_retries = max_retries
        self.max_tokens = max_tokens
        self.prompt_version = prompt_version

    def propose(
        self,
        *,
        outstanding_items: list[dict],
        obtained_items: list[dict],
        evidence_text: str,
        prior_evidence: str = "",
        session_context: dict | None = None,
        mode: str = MODE_INCREMENTAL,
    ) -> InterpreterProposal:
        ctx = dict(session_context or {})
        session_id = ctx.pop("session_id", None)

        if mode == MODE_REANALYSIS:
            messages = self.prompt_registry.render(
                "checklist_reanalysis", version=self.prompt_version,
                all_items=_format_all(outstanding_items, obtained_items),
                evidence_text=evidence_text,
                **ctx,
            )
        else:
            messages = self.prompt_registry.render(
                "checklist_incremental", version=self.prompt_version,
                missing_items=_format_missing(outstanding_items),
                obtained_items=_format_obtained(obtained_items),
                prior_evidence=prior_evidence or "(None)",
                evidence_text=evidence_text,
                evidence_source=ctx.pop("evidence_source", "recording"),
                **ctx,
            )

        try:
            result = self.gateway.chat(
                messages=messages,
                model=self.model,
                purpose=f"{self.PURPOSE}:{mode}",
                session_id=session_id,
                max_retries=self.max_retries,
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
        except RuntimeError as e:
            raise InterpreterUnavailableError(str(e)) from e

        data = extract_json(result.get("content", ""), expect=dict)
        proposal = parse_proposal(data, mode=mode)
        logger.info(
            "Interpreter (%s) proposed obtain=%d reset=%d findings=%d",
            mode, len(proposal.to_obtain), len(proposal.to_reset), len(proposal.findings),
            extra={"session_id": session_id},
        )
        return proposal
