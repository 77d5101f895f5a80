"""
Workshop Discovery
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retry, cost tracking)
    - prompt_registry: versioned prompt templates with YAML overrides
    - interpreter: evidence interpreter boundary (proposals only, never writes)
    - assistants.checklist_generator: checklist generation from the workshop mission
"""
