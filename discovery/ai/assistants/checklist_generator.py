"""
Workshop Discovery
Checklist Generator Assistant.

Pipeline:
    1. Read workshop mission, module, industry and session topics
    2. Build prompt from the "checklist_generation" template (+ module guidance)
    3. Call LLM → JSON array of checklist items
    4. Replace the session checklist in one transaction

The existing checklist is only touched once the model output parsed cleanly.
"""

import logging

from discovery.ai.interpreter import extract_json
from discovery.core.exceptions import InterpreterUnavailableError, MalformedInterpreterOutputError
from discovery.services.checklist_store import ChecklistStore
from discovery.services.workshop_service import get_session

logger = logging.getLogger(__name__)


MODULE_GUIDANCE = {
    "MM": [
        "Purchasing organization structure", "Material master data requirements",
        "Vendor master data", "Purchase requisition process",
        "Purchase order types and workflows", "Goods receipt process",
        "Invoice verification", "Inventory management", "Warehouse structure",
    ],
    "FICO": [
        "Chart of accounts structure", "Company codes and fiscal years",
        "GL account determination", "Cost center hierarchy", "Profit center structure",
        "Internal orders", "AP/AR processes", "Asset accounting",
        "Financial reporting requirements",
    ],
    "SD": [
        "Sales organization structure", "Customer master data", "Pricing procedures",
        "Sales order types", "Delivery process", "Billing document types",
        "Credit management", "Output determination",
    ],
    "PP": [
        "Plant structure", "Work centers", "Bill of materials", "Routing",
        "Production orders", "MRP settings", "Capacity planning", "Shop floor control",
    ],
    "WM": [
        "Warehouse structure", "Storage types and bins", "Putaway strategies",
        "Picking strategies", "Transfer orders", "Inventory management",
        "RF/mobile integration",
    ],
    "QM": [
        "Inspection types", "Quality plans", "Inspection lots", "Usage decisions",
        "Quality notifications", "Certificates",
    ],
    "PM": [
        "Functional locations", "Equipment master", "Maintenance plans",
        "Work orders", "Notifications", "Task lists",
    ],
}


class ChecklistGenerator:
    """AI-powered discovery checklist generator."""

    PURPOSE = "checklist_generator"

    def __init__(self, gateway=None, prompt_registry=None, store: ChecklistStore | None = None,
                 *, model: str | None = None, max_retries: int = 3,
                 min_items: int = 50, max_items: int = 100):
        self.gateway = gateway
        self.prompt_registry = prompt_registry
        self.store = store or ChecklistStore()
        self.model = model
        self.max_retries = max_retries
        self.min_items = min_items
        self.max_items = max_items

    def build_messages(self, session) -> list[dict]:
        ctx = session.context()
        module = (session.workshop.module or "").upper() if session.workshop else ""
        guidance = MODULE_GUIDANCE.get(module)
        return self.prompt_registry.render(
            "checklist_generation",
            mission_statement=ctx["mission_statement"],
            module=ctx["module"],
            session_name=ctx["session_name"] or "Discovery Session",
            industry_context=ctx["industry_context"],
            topics_block=f"**Key Topics to Cover:**\n{ctx['topics']}\n\n" if ctx["topics"] else "",
            module_guidance_block=(
                "**Module-Specific Areas:**\n" + "\n".join(f"- {g}" for g in guidance) + "\n\n"
                if guidance else ""
            ),
            min_items=self.min_items,
            max_items=self.max_items,
        )

    @staticmethod
    def parse_items(raw: str) -> list[dict]:
        """JSON array → normalised item dicts (text, importance, category, suggested_question)."""
        data = extract_json(raw, expect=list)
        items = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            text = str(entry.get("item_text") or entry.get("text") or "").strip()
            if not text:
                continue
            items.append({
                "text": text,
                "importance": entry.get("importance") or "important",
                "category": entry.get("category") or "General",
                "suggested_question": entry.get("suggested_question") or "",
            })
        if not items:
            raise MalformedInterpreterOutputError(
                "Checklist generation returned no usable items", raw_excerpt=(raw or "")[:300],
            )
        return items

    def generate(self, session_id: int, *, actor: str = "system"):
        """
        Generate and store a fresh checklist for the session.

        Returns the stored ChecklistItem rows.

        Raises:
            NotFoundError: unknown session.
            InterpreterUnavailableError: gateway failed after retries.
            MalformedInterpreterOutputError: output was not a usable JSON array.
        """
        session = get_session(session_id)
        messages = self.build_messages(session)

        try:
            result = self.gateway.chat(
                messages=messages,
                model=self.model,
                purpose=self.PURPOSE,
                user=actor,
                session_id=session_id,
                max_retries=self.max_retries,
                max_tokens=8000,
                temperature=0.2,
            )
        except RuntimeError as e:
            raise InterpreterUnavailableError(str(e)) from e

        items = self.parse_items(result.get("content", ""))
        logger.info("Generated %d checklist items", len(items), extra={"session_id": session_id})
        return self.store.replace_items(session_id, items, actor=actor)
