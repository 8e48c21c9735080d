"""Service modules - Submission lifecycle orchestration"""
from .submission_service import SubmissionService, SubmitOutcome, FieldChangeOutcome

__all__ = [
    "SubmissionService",
    "SubmitOutcome",
    "FieldChangeOutcome",
]
