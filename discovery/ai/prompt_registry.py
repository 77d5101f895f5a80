"""
Workshop Discovery
Prompt Registry.

Versioned prompt template management with:
    - Built-in default templates (checklist generation, incremental evidence
      analysis, full-corpus reanalysis)
    - Optional YAML overrides loaded from PROMPTS_DIR
    - {{variable}} rendering into chat messages

Usage:
    from discovery.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("checklist_incremental", version="v1",
                               workshop_name="Wholesale MM", ...)
"""

import logging
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Variables are replaced using {{variable_name}} syntax; unknown
        placeholders are left in place.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r"\{\{(\s*\w+\s*)\}\}", replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are always registered; YAML files in ``prompts_dir``
    (one template per file) override them by name + version.
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        if prompts_dir:
            self._load_from_dir()

    def _load_defaults(self):
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=data.get("system", ""),
                user=data.get("user", ""),
                description=data.get("description", ""),
                metadata=data.get("metadata", {}),
            )
            self._register(tpl)
            logger.info("Loaded prompt template: %s (%s) from %s",
                        tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        return self._templates.get(name, {}).get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        """List all registered templates."""
        return [
            tpl.to_dict()
            for versions in self._templates.values()
            for tpl in versions.values()
        ]

    def get_versions(self, name: str) -> list[str]:
        return list(self._templates.get(name, {}).keys())


# ── Built-in Default Templates ────────────────────────────────────────────────

_EVIDENCE_RULES = (
    "Mark an item obtained ONLY when SPECIFIC, CONCRETE data was provided "
    "(numbers, names, structures, values, decisions).\n"
    "NOT obtained: a topic that was only mentioned or discussed, a question being asked, "
    "\"yes, we have that\" without details, or a promise to provide the information later.\n"
    "Examples that ARE obtained:\n"
    "- \"We have 5 distribution centers: Dubai, Abu Dhabi, Sharjah, Ajman and RAK\"\n"
    "- \"Payment terms are Net 30 for retailers and Net 60 for wholesalers\"\n"
    "When in doubt, do NOT mark the item obtained."
)

_FINDING_SHAPE = (
    "    {\n"
    "      \"topic\": \"Brief topic title\",\n"
    "      \"finding_type\": \"process|pain_point|integration|compliance|performance|workaround|requirement|other\",\n"
    "      \"details\": \"What was discussed\",\n"
    "      \"source_quote\": \"Relevant quote\",\n"
    "      \"analysis\": \"What this means for the implementation\",\n"
    "      \"recommendation\": \"Specific best-practice recommendation\",\n"
    "      \"best_practice\": \"Relevant standard functionality\",\n"
    "      \"risk_level\": \"high|medium|low\"\n"
    "    }\n"
)

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="checklist_generation",
        version="v1",
        description="Generate an exhaustive discovery checklist from the workshop mission",
        system=(
            "You are an SAP S/4HANA implementation consultant preparing a pre-discovery workshop.\n"
            "Identify ALL specific information items that must be gathered from the client to "
            "write design documents, build the business process master list and configure the system.\n\n"
            "Be SPECIFIC. Each item is one concrete piece of information.\n"
            "BAD: \"Company information\". GOOD: \"Number of legal entities/company codes\".\n\n"
            "Rate importance:\n"
            "- critical: blocks design decisions\n"
            "- important: significantly impacts configuration\n"
            "- nice-to-have: helpful for optimization, not blocking"
        ),
        user=(
            "Create a checklist for this workshop mission:\n\n"
            "**MISSION STATEMENT:**\n{{mission_statement}}\n\n"
            "**SAP Module:** {{module}}\n"
            "**Session Name:** {{session_name}}\n"
            "**Industry Context:** {{industry_context}}\n\n"
            "{{topics_block}}"
            "{{module_guidance_block}}"
            "Generate {{min_items}}-{{max_items}} checklist items organized by category.\n\n"
            "Output format: JSON array of objects with keys "
            "item_text, importance (critical|important|nice-to-have), category, suggested_question.\n"
            "Return ONLY the JSON array, no other text."
        ),
    ),
    PromptTemplate(
        name="checklist_incremental",
        version="v1",
        description="Analyze one new evidence chunk against outstanding and obtained items",
        system=(
            "You are an expert SAP S/4HANA implementation consultant analyzing workshop evidence "
            "(recording transcripts and uploaded documents). You never infer that information "
            "was provided from silence."
        ),
        user=(
            "**Workshop:** {{workshop_name}}\n"
            "**Session:** {{session_name}}\n"
            "**Mission:** {{mission_statement}}\n"
            "**Module:** {{module}}\n"
            "**Industry Context:** {{industry_context}}\n\n"
            "**Checklist items still missing:**\n{{missing_items}}\n\n"
            "**Items already obtained (check for CONTRADICTIONS):**\n{{obtained_items}}\n\n"
            "**Earlier evidence (context only, already analyzed):**\n{{prior_evidence}}\n\n"
            "**NEW evidence ({{evidence_source}}):**\n{{evidence_text}}\n\n"
            "TASK 1: identify missing items the NEW evidence answers.\n" + _EVIDENCE_RULES + "\n\n"
            "TASK 2: if the NEW evidence explicitly contradicts or corrects a value already "
            "recorded (\"actually we closed 2, so now 3 warehouses\", \"let me correct that\"), "
            "flag the item for reset with kind \"contradiction\". Never reset an item only because "
            "the new evidence does not mention it.\n\n"
            "TASK 3: capture information outside the checklist as findings.\n\n"
            "Output format: JSON object:\n"
            "{\n"
            "  \"obtained_items\": [{\"item_id\": 123, \"obtained_text\": \"...\", "
            "\"confidence\": \"high|medium|low\", \"source_quote\": \"...\"}],\n"
            "  \"items_to_reset\": [{\"item_id\": 456, \"reason\": \"...\", "
            "\"contradiction_quote\": \"...\", \"kind\": \"contradiction\"}],\n"
            "  \"additional_findings\": [\n" + _FINDING_SHAPE + "  ]\n"
            "}\n"
            "Empty arrays are fine. Return ONLY valid JSON."
        ),
    ),
    PromptTemplate(
        name="checklist_reanalysis",
        version="v1",
        description="Re-evaluate every checklist item against the complete evidence corpus",
        system=(
            "You are a SENIOR SAP S/4HANA implementation consultant performing a comprehensive "
            "re-analysis of all workshop evidence. Be conservative."
        ),
        user=(
            "**Workshop:** {{workshop_name}}\n"
            "**Session:** {{session_name}}\n"
            "**Mission:** {{mission_statement}}\n"
            "**Module:** {{module}}\n"
            "**Industry Context:** {{industry_context}}\n\n"
            "**ALL checklist items:**\n{{all_items}}\n\n"
            "**COMPLETE evidence of the session:**\n{{evidence_text}}\n\n"
            "TASK 1: re-evaluate every item against the complete evidence.\n" + _EVIDENCE_RULES + "\n\n"
            "TASK 2: for items currently obtained, reset them when the evidence contradicts the "
            "recorded value (kind \"contradiction\") or when the evidence turns out to be only an "
            "acknowledgment without concrete data (kind \"insufficient_evidence\").\n\n"
            "TASK 3: capture off-checklist topics (pain points, workarounds, concerns, "
            "integration issues) as findings.\n\n"
            "Output format: JSON object:\n"
            "{\n"
            "  \"items_to_obtain\": [{\"item_id\": 123, \"obtained_text\": \"...\", "
            "\"confidence\": \"high|medium\", \"evidence_quote\": \"...\"}],\n"
            "  \"items_to_reset_to_missing\": [{\"item_id\": 456, \"reason\": \"...\", "
            "\"kind\": \"contradiction|insufficient_evidence\"}],\n"
            "  \"stray_topics\": [\n" + _FINDING_SHAPE + "  ]\n"
            "}\n"
            "Return ONLY valid JSON."
        ),
    ),
]
