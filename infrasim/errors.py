"""Typed failures raised by the store, the mutation engine and the parser."""

from __future__ import annotations

from typing import List, Sequence, Tuple


class InfrasimError(Exception):
    """Base class for every failure the command pipeline knows how to report."""


class ExtractionError(InfrasimError, ValueError):
    """No parseable structure could be located in a model reply."""


class ActionValidationError(InfrasimError, ValueError):
    """Candidate data did not match the expected shape."""

    def __init__(self, errors: Sequence[Tuple[str, str]], message: str | None = None) -> None:
        self.errors: List[Tuple[str, str]] = list(errors)
        if message is None:
            message = "; ".join(f"{path}: {reason}" for path, reason in self.errors) or "invalid data"
        super().__init__(message)


class NotFoundError(InfrasimError, LookupError):
    """A referenced organization or component does not exist."""


class RecordNotFoundError(NotFoundError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Organization with ID {record_id} not found")


class ComponentNotFoundError(NotFoundError):
    def __init__(self, term: str, *, by_name: bool = False) -> None:
        self.term = term
        if by_name:
            message = f"No infrastructure component matches '{term}'"
        else:
            message = f"Component with ID {term} not found"
        super().__init__(message)


class IndexShapeError(InfrasimError, ValueError):
    """A query vector does not match the dimensionality of the stored index."""

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(
            f"Query vector must have the same length as the index: expected {expected}, got {received}"
        )


__all__ = [
    "ActionValidationError",
    "ComponentNotFoundError",
    "ExtractionError",
    "IndexShapeError",
    "InfrasimError",
    "NotFoundError",
    "RecordNotFoundError",
]
