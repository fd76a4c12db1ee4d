"""Custom exception hierarchy for the fixflow remediation engine.

Every exception carries a machine-readable ``code`` and an optional
``retryable`` flag. The Step Runner copies both into the Step Result
envelope, and the Backoff Executor trusts an explicit ``retryable`` flag
over its message-based classification.

Exception Hierarchy:
    FixflowError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── StepExecutionError
    │   │   ├── StepTimeoutError
    │   │   └── StepAbandonedError
    │   ├── SessionTimeoutError
    │   ├── PhaseFailedError
    │   └── ContractError
    ├── ExternalServiceError
    │   ├── TrackerError
    │   └── NotificationError
    └── AgentError
        ├── ProviderConnectionError
        └── ResponseParseError

Example Usage:
    >>> from fixflow.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from fixflow.enums import WorkflowPhase

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


class FixflowError(Exception):
    """Base exception for all fixflow errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code
        retryable: Explicit retry hint, or None to let the caller classify
    """

    default_code = "FIXFLOW_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            code: Error code, defaults to the class ``default_code``
            retryable: Explicit retry hint
        """
        self.message = message
        self.code = code or self.default_code
        self.retryable = retryable
        super().__init__(message)


class ConfigurationError(FixflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
    """

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class WorkflowError(FixflowError):
    """Workflow execution errors raised by the orchestration engine."""

    default_code = "WORKFLOW_ERROR"


class StepExecutionError(WorkflowError):
    """A single pipeline step could not produce its payload.

    Attributes:
        step_id: Identifier of the step that failed
    """

    default_code = "STEP_ERROR"

    def __init__(
        self,
        message: str,
        step_id: str | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.step_id = step_id
        super().__init__(message, code=code, retryable=retryable)


class StepTimeoutError(StepExecutionError):
    """A step did not finish before its configured timeout.

    The message always contains the word "timeout" so that the default
    retry classification treats it as transient.

    Attributes:
        timeout_seconds: The timeout that was exceeded
    """

    default_code = "STEP_TIMEOUT"

    def __init__(self, step_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Step {step_id} timeout after {timeout_seconds}s",
            step_id=step_id,
            retryable=True,
        )


class StepAbandonedError(StepExecutionError):
    """A retry was not started because the owning session is no longer active.

    Never retried.
    """

    default_code = "STEP_ABANDONED"

    def __init__(self, step_id: str, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Step {step_id} abandoned: session {session_id} is no longer active",
            step_id=step_id,
            retryable=False,
        )


class SessionTimeoutError(WorkflowError):
    """The session deadline passed while the pipeline was still running."""

    default_code = "SESSION_TIMEOUT"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} timed out", retryable=False)


class PhaseFailedError(WorkflowError):
    """A phase returned an unsuccessful Step Result.

    The underlying error message is preserved verbatim in ``reason`` so it
    can be shown to operators unchanged.

    Attributes:
        phase: Phase that failed
        reason: Original error message from the step
    """

    default_code = "PHASE_FAILED"

    def __init__(
        self,
        phase: WorkflowPhase,
        reason: str,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.phase = phase
        self.reason = reason
        super().__init__(f"{phase.value} failed: {reason}", code=code, retryable=retryable)


class ContractError(WorkflowError):
    """A payload passed between phases is malformed or incomplete.

    Contract violations are programming errors and are never retried.
    """

    default_code = "CONTRACT_VIOLATION"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ExternalServiceError(FixflowError):
    """External service communication errors.

    Raised when communication with the tracker, chat or model endpoints
    fails. Status codes 429, 502, 503 and 504 are marked retryable.

    Attributes:
        status_code: HTTP status code (if applicable)
        response_text: Response body text (if applicable)
    """

    default_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_text = response_text

        retryable = None
        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
            retryable = status_code in RETRYABLE_STATUS_CODES

        super().__init__(full_message, code=code, retryable=retryable)
        # Preserve original message
        self.message = message


class TrackerError(ExternalServiceError):
    """Item tracker request failed."""

    default_code = "TRACKER_ERROR"


class NotificationError(ExternalServiceError):
    """Notification channel request failed."""

    default_code = "NOTIFICATION_ERROR"


class AgentError(FixflowError):
    """Errors raised while talking to the model endpoint.

    Attributes:
        model: Model identifier in use when the error occurred
    """

    default_code = "AGENT_ERROR"

    def __init__(
        self,
        message: str,
        model: str | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.model = model
        super().__init__(message, code=code, retryable=retryable)


class ProviderConnectionError(AgentError):
    """Cannot reach the model endpoint.

    Attributes:
        provider_url: URL that could not be reached
    """

    default_code = "PROVIDER_CONNECTION_ERROR"

    def __init__(self, message: str, provider_url: str | None = None, model: str | None = None) -> None:
        self.provider_url = provider_url
        full_message = message
        if provider_url:
            full_message = f"{message} (url: {provider_url})"
        super().__init__(full_message, model=model, retryable=True)


class ResponseParseError(AgentError):
    """The model reply could not be parsed into the expected structure."""

    default_code = "RESPONSE_PARSE_ERROR"

    def __init__(self, message: str, model: str | None = None) -> None:
        super().__init__(message, model=model, retryable=False)
