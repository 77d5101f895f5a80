"""
Workshop Discovery
AI Assistants.

    - ChecklistGenerator: mission statement → discovery checklist items
"""

from discovery.ai.assistants.checklist_generator import ChecklistGenerator

__all__ = ["ChecklistGenerator"]
