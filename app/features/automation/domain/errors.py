"""
Tagged error types for automation handlers.

The queue inspects ``retryable`` on anything a handler raises: retryable
errors consume retry budget, non-retryable ones fail the job immediately.
"""


class AutomationError(Exception):
    """Base exception for automation components."""

    retryable = True

    def __init__(self, message: str, operation: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.operation = operation
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(AutomationError):
    """Missing or invalid configuration; retrying cannot fix it."""

    retryable = False


class NoTemplateConfigured(ConfigurationError):
    def __init__(self, stage: str | None, template_id: str | None = None):
        target = f"template {template_id}" if template_id else f"stage {stage}"
        super().__init__(f"No email template found for {target}", operation="resolve_template")
        self.stage = stage
        self.template_id = template_id


class NoOfferTemplateConfigured(ConfigurationError):
    def __init__(self, job_id: str):
        super().__init__(f"No offer template available for job {job_id}", operation="resolve_offer_template")
        self.job_id = job_id


class PolicyValidationError(ConfigurationError):
    """Stage policy configuration failed validation at load time."""


class TransportError(AutomationError):
    """The email transport did not deliver; safe to retry."""

    def __init__(self, message: str):
        super().__init__(message, operation="send_email", retryable=True)
