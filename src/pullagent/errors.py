"""Exception hierarchy for pullagent.

Lock contention has no exception class: an invocation that finds the lock
held returns a ``skipped`` outcome.
"""


class PullAgentError(Exception):
    """Base class for all pullagent errors."""

    kind = "error"


class ConfigurationError(PullAgentError):
    """Missing or malformed configuration or credential material."""

    kind = "configuration"


class FetchError(PullAgentError):
    """The desired-state source could not be fetched."""

    kind = "fetch"


class DocumentError(FetchError):
    """The fetched desired-state document is not valid."""

    kind = "document"


class SecretsError(PullAgentError):
    """The secrets bundle could not be decrypted or rendered."""

    kind = "secrets"


class ApplyError(PullAgentError):
    """A resource failed to reconcile."""

    kind = "apply"


class DestructiveActionError(PullAgentError):
    """A destructive maintenance action (reboot) did not complete."""

    kind = "destructive_action"
