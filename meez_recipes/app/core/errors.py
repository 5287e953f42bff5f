import enum


class ParseErrorCode(str, enum.Enum):
    INVALID_INPUT = "INVALID_INPUT"
    FETCH_FAILED = "FETCH_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    GENERATION_EMPTY = "GENERATION_EMPTY"
    FINAL_VALIDATION_FAILED = "FINAL_VALIDATION_FAILED"


DEFAULT_MESSAGES: dict[ParseErrorCode, str] = {
    ParseErrorCode.INVALID_INPUT: "The input could not be understood as a recipe request.",
    ParseErrorCode.FETCH_FAILED: "We couldn't retrieve content from that link. Please try again.",
    ParseErrorCode.GENERATION_FAILED: "We couldn't generate a recipe right now. Please try again.",
    ParseErrorCode.GENERATION_EMPTY: "No recipe could be found in the provided content.",
    ParseErrorCode.FINAL_VALIDATION_FAILED: "The generated recipe did not pass quality checks.",
}

_CLIENT_CORRECTABLE = {
    ParseErrorCode.INVALID_INPUT,
    ParseErrorCode.GENERATION_EMPTY,
    ParseErrorCode.FINAL_VALIDATION_FAILED,
}


def is_client_correctable(code: ParseErrorCode) -> bool:
    """True when the caller can fix the failure by changing the input."""
    return code in _CLIENT_CORRECTABLE


class PipelineError(Exception):
    def __init__(self, code: ParseErrorCode, message: str | None = None):
        self.code = code
        self.message = message or DEFAULT_MESSAGES[code]
        super().__init__(self.message)


class ConfigurationError(RuntimeError):
    pass


class ProviderError(RuntimeError):
    """Raised by a generation provider; `temporary` marks rate limits and outages."""

    def __init__(self, provider: str, message: str, temporary: bool = False):
        self.provider = provider
        self.temporary = temporary
        super().__init__(f"{provider}: {message}")


class FetchError(RuntimeError):
    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)
