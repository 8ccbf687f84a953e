"""
Error taxonomy.

Parse-time problems raise InvalidDefinition. Extraction-time problems share
ExtractionError so the scheduler can tell them apart from transport failures
(FetchFailed). Whether an extraction error propagates is decided by the rule's
``required`` flag, never by the caller.
"""

from typing import Iterable, Optional


class VentricleError(Exception):
    """Base class for all engine errors."""


class InvalidDefinition(VentricleError):
    """A pulse definition could not be parsed or failed validation."""

    def __init__(self, message: str, pointer: Optional[str] = None):
        self.pointer = pointer
        if pointer:
            message = f"{pointer}: {message}"
        super().__init__(message)


class ExtractionError(VentricleError):
    """Base class for failures raised while resolving extraction rules."""


class MissingVariables(ExtractionError):
    def __init__(self, keys: Iterable[str]):
        self.keys = list(keys)
        super().__init__(f"Missing variables: {', '.join(self.keys)}")


class NoExtractedValue(ExtractionError):
    def __init__(self, name: str, detail: str = ""):
        self.name = name
        message = f'No value extracted for "{name}"'
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class MissingField(ExtractionError):
    def __init__(self, rule_name: str, field_name: str, select: str):
        self.rule_name = rule_name
        self.field_name = field_name
        self.select = select
        super().__init__(
            f'Field "{field_name}" of "{rule_name}" not found (select "{select}")'
        )


class FetchFailed(VentricleError):
    """Non-2xx response or transport error for a single GET."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        self.url = url
        self.status = status
        self.reason = reason
        super().__init__(f"Request failed ({reason}) for {url}")
