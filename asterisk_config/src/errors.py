from __future__ import annotations


class AsteriskConfigError(Exception):
    """Base class for every error raised by the configuration sidecar."""


class ConfigError(AsteriskConfigError):
    """Raised when the sidecar configuration or template tree is unusable.

    Retrying will not help: an empty template root stays empty until an
    operator changes something.  The crash-loop guard still applies.
    """


class TransientAPIError(AsteriskConfigError):
    """Kubernetes API failure that may succeed on a later cycle."""


class KubeAPIError(TransientAPIError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class KubeAPITimeout(TransientAPIError):
    """A Kubernetes API call did not answer within the configured timeout."""


class ResourceNotFound(AsteriskConfigError):
    def __init__(self, kind: str, name: str, namespace: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class UnsupportedQuery(AsteriskConfigError):
    """Raised for a network fact name outside the supported vocabulary."""


class DiscoveryError(AsteriskConfigError):
    """Raised when a network fact cannot be discovered."""


class SourceError(AsteriskConfigError):
    """Raised when the template archive cannot be fetched or extracted."""


class TemplateSyntaxError(AsteriskConfigError):
    def __init__(self, name: str, lineno: int | None, message: str, context: str = "") -> None:
        location = f"{name}:{lineno}" if lineno is not None else name
        text = f"template syntax error in {location}: {message}"
        if context:
            text = f"{text} (near {context!r})"
        super().__init__(text)
        self.name = name
        self.lineno = lineno
        self.context = context


class TemplateRenderError(AsteriskConfigError):
    """Raised when a syntactically valid template fails during evaluation."""


class WatchFailedError(AsteriskConfigError):
    """A resource watch died; watch coverage for the cycle can no longer be trusted."""


class ExternalProtocolError(AsteriskConfigError):
    """Asterisk answered a reload call with something other than success."""

    def __init__(self, module: str, message: str) -> None:
        super().__init__(message)
        self.module = module


class ModuleNotLoadedError(ExternalProtocolError):
    pass


class ReloadAuthenticationError(ExternalProtocolError):
    pass


class ModuleBusyError(ExternalProtocolError):
    pass


class FatalReadinessError(AsteriskConfigError):
    """Asterisk never reported readiness; the reload controller can never work."""


class CrashLoopError(AsteriskConfigError):
    """The service exited too quickly too many times in a row."""
