"""Onboarding error taxonomy.

Every error carries the name of the onboarding step that failed
and whatever addresses were already known, so the caller can re-enter
the sequence from that step.
"""

from pprint import pformat


class OnboardingError(Exception):
    """Base class for all onboarding failures.

    :param step:
        Name of the onboarding step that failed, e.g. ``deploy_safe``

    :param context:
        Addresses, transaction hashes and other diagnostics
    """

    def __init__(self, message: str, step: str | None = None, context: dict | None = None):
        super().__init__(message)
        self.step = step
        self.context = context or {}

    def __str__(self):
        message = super().__str__()
        if self.step:
            message = f"[{self.step}] {message}"
        if self.context:
            message = f"{message}\n{pformat(self.context)}"
        return message

    def with_step(self, step: str, **context) -> "OnboardingError":
        """Attach the failing step and known addresses, keep the original context."""
        if self.step is None:
            self.step = step
        for k, v in context.items():
            self.context.setdefault(k, v)
        return self


class ConfigurationError(OnboardingError):
    """Missing required address, wallet or other capability.

    Fatal, not retried.
    """


class AddressResolutionError(ConfigurationError):
    """No explicit override and no deployment record for the current chain."""


class TransientReadError(OnboardingError):
    """Chain state not visible after the bounded retry.

    Raised when a view call keeps returning empty data,
    usually because the node we talk to has not yet seen
    a just-deployed contract.
    """


class AccountCreationError(OnboardingError):
    """Safe deployment transaction was mined, but we could not extract the Safe address.

    The context contains receipt diagnostics for manual recovery.
    """


class ExecutionError(OnboardingError):
    """A submitted transaction reverted or was rejected.

    Never retried, as a blind retry could double-spend or double-deploy.
    """

    def __init__(self, message: str, tx_hash: str | None = None, revert_reason: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash
        self.revert_reason = revert_reason


class AmountParseError(OnboardingError, ValueError):
    """Token amount could not be normalised to an exact integer.

    :param kind:
        One of ``empty``, ``non_numeric``, ``non_integer``, ``negative``
    """

    def __init__(self, message: str, kind: str, value=None):
        super().__init__(message, context={"value": value})
        self.kind = kind
        self.value = value
