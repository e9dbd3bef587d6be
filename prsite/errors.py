"""Error taxonomy for webhook processing, instances, ports and comments."""


class PrsiteError(Exception):
    """Base class for all prsite errors."""

    pass


class EventValidationError(PrsiteError):
    """Malformed or unrecognized webhook event; dropped without user-visible
    effect."""

    pass


class ResourceExhausted(PrsiteError):
    """No contiguous block of free ports is available."""

    pass


class PortReleaseError(PrsiteError, ValueError):
    """Releasing a port that is not currently held."""

    pass


class InstanceNotFound(PrsiteError, KeyError):
    """No instance is registered for the pull request."""

    def __init__(self, pr_id: int) -> None:
        super().__init__(pr_id)
        self.pr_id = pr_id

    def __str__(self) -> str:
        return f"No instance for PR #{self.pr_id}"


class TemplateError(PrsiteError):
    """Defect in developer-authored comment templates or their context."""

    pass


class TemplateNotFound(TemplateError, KeyError):
    """Requested comment template is not registered."""

    def __init__(self, identifier: str) -> None:
        super().__init__(identifier)
        self.identifier = identifier

    def __str__(self) -> str:
        return f"Requested comment {self.identifier} does not exist"


class DuplicateTemplate(TemplateError):
    """Template identifier already claimed."""

    pass


class UnknownVariable(TemplateError):
    """Template requests a variable missing from the context."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown variable {self.name} requested"


class UnsafeTemplateValue(TemplateError):
    """Context value would introduce a new placeholder token when substituted."""

    pass


class ExternalAPIError(PrsiteError):
    """Failure in the GitHub client or the site builder."""

    pass


class GitPlatformError(ExternalAPIError):
    """Raised when a Git platform API call fails."""

    pass


class BuildError(ExternalAPIError):
    """Raised when fetching, extracting or starting a site fails."""

    pass
