"""
Polyfetch error taxonomy.

Every error raised by the runtime itself derives from PolyfetchError.
Errors raised by evaluated code are never wrapped: they reach the caller
with their own class and traceback.
"""

from typing import Optional


class PolyfetchError(Exception):
    """Base exception for all runtime errors"""
    pass


# ===== REGISTRATION =====

class RegistrationError(PolyfetchError):
    """Raised when a name cannot be registered"""
    pass


class DuplicateSchemeError(RegistrationError):
    """Raised when a URL scheme already has a handler"""

    def __init__(self, scheme: str):
        super().__init__(f"Protocol scheme already registered: {scheme}")
        self.scheme = scheme


class DuplicateGlobalError(RegistrationError):
    """Raised when a global name is registered twice"""

    def __init__(self, name: str):
        super().__init__(f"Global already registered: {name}")
        self.name = name


# ===== ROUTING =====

class RoutingError(PolyfetchError):
    """Raised when a request cannot be routed to a handler"""
    pass


class InvalidURLError(RoutingError, TypeError):
    """Raised when the URL handed to dispatch is not an absolute URL string"""
    pass


class UnknownSchemeError(RoutingError):
    """Raised when no handler is registered for a URL scheme"""

    def __init__(self, scheme: str):
        super().__init__(f"Unknown protocol: {scheme}")
        self.scheme = scheme


# ===== TRANSPORT =====

class TransportError(PolyfetchError):
    """Raised when a fetch completed with a non-success response"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(f"{message} {body}".rstrip())
        self.status = status
        self.body = body


class SourceFetchFailedError(TransportError):
    """Raised when module source could not be downloaded"""

    def __init__(self, url: str, status: Optional[int] = None, body: str = ""):
        super().__init__(f"Unable to download module source from {url}:", status, body)
        self.url = url


# ===== LIFECYCLE =====

class LifecycleError(PolyfetchError):
    """Raised when an operation is attempted in the wrong runtime state"""
    pass


class NotInitializedError(LifecycleError):
    """Raised when evaluating before Runtime.init()"""

    def __init__(self):
        super().__init__(
            "Runtime was not initialized, use await runtime.init() before doing any evaluation"
        )


class AlreadyClosedError(LifecycleError):
    """Raised when the runtime is used after close()"""

    def __init__(self):
        super().__init__("Runtime is closed")


# ===== LLM =====

class LLMError(PolyfetchError):
    """Base exception for the language model client"""
    pass


class LLMDisabledError(LLMError):
    """Raised when the LLM API is turned off in config"""

    def __init__(self):
        super().__init__("LLM API is disabled")


class ServiceUnreachableError(LLMError):
    """Raised when the model service does not answer (not installed or not running)"""
    pass


class ModelMissingError(LLMError):
    """Raised when the configured model is not available on the service"""

    def __init__(self, model: str, message: Optional[str] = None):
        super().__init__(message or f"Model {model} is not installed")
        self.model = model


class AutoPullDisabledError(ModelMissingError):
    """Raised when the model is missing and the pull policy forbids downloading it"""

    def __init__(self, model: str):
        super().__init__(
            model,
            f"Model {model} is not installed and llm.autopull is not enabled, unable to download model",
        )


class RequestFailedError(LLMError, TransportError):
    """Raised when the LLM API answers with a non-success status"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        TransportError.__init__(self, message, status, body)
