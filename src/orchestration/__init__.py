"""Orchestration Layer - Optional scheduling of governance jobs."""

from src.orchestration.scheduler import GovernanceScheduler

__all__ = [
    "GovernanceScheduler",
]
