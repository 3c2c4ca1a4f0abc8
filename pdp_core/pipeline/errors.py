from __future__ import annotations
from typing import Optional


class PipelineError(Exception):
    pass


class SubmissionNotFound(PipelineError):
    def __init__(self, submission_id: str):
        super().__init__(f"Submission not found: {submission_id}")
        self.submission_id = submission_id


class ArtifactUnavailable(PipelineError):
    """The document could not be assembled or read; retried like a transport error."""
    pass


class UnknownVerdict(PipelineError):
    def __init__(self, status: Optional[str]):
        super().__init__(f"Statut PDP inconnu: {status}")
        self.status = status


class JobFailed(PipelineError):
    def __init__(self, message: str, attempts: int):
        super().__init__(f"Échec permanent de la soumission PDP après {attempts} tentatives: {message}")
        self.attempts = attempts


class InvalidWebhookSignature(PipelineError):
    pass
