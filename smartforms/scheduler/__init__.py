"""Caller-side scheduling"""
from .escalation_scheduler import EscalationScheduler

__all__ = ["EscalationScheduler"]
