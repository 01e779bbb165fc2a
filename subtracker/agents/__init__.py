"""AI Agents package."""

from subtracker.agents.ai_agents import EvidenceExtractionAgent

__all__ = [
    "EvidenceExtractionAgent",
]
