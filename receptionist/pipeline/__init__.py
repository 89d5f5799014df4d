"""Per-turn pipeline stages and the orchestrator that runs them."""

from .orchestrator import Orchestrator

__all__ = ["Orchestrator"]
