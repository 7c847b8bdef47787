"""Exceptions raised before or while setting up a structure search."""
from __future__ import annotations

from typing import Iterable, Sequence


class StructureMCMCError(ValueError):
    """Base class of every error raised by the package."""


class ConfigurationError(StructureMCMCError):
    """Score configuration and supplied matrices do not fit together."""


class ScoreTableMismatch(ConfigurationError):
    """A precomputed score table was built for a different search space."""


class ValidationError(StructureMCMCError):
    """Malformed user input detected before sampling starts."""


class OrderValidationError(ValidationError):
    """A start order is not a permutation of the main nodes.

    Parameters
    ----------
    missing:
        Labels of main nodes absent from the order.
    unexpected:
        Entries of the order that are not main nodes.
    duplicated:
        Labels appearing more than once.
    context:
        Which start order is meant, e.g. the DBN phase it belongs to.
    """

    def __init__(
        self,
        missing: Sequence = (),
        unexpected: Sequence = (),
        duplicated: Sequence = (),
        context: str | None = None,
    ) -> None:
        self.missing = list(missing)
        self.unexpected = list(unexpected)
        self.duplicated = list(duplicated)
        self.context = context
        parts = []
        if self.missing:
            parts.append("missing nodes: " + _join(self.missing))
        if self.unexpected:
            parts.append("nodes not in the network: " + _join(self.unexpected))
        if self.duplicated:
            parts.append("duplicated nodes: " + _join(self.duplicated))
        prefix = "invalid start order" if context is None else f"invalid {context} start order"
        super().__init__(prefix + "; " + "; ".join(parts))


class InvalidParentSet(StructureMCMCError):
    """A parent set outside the permissible family of a node was requested."""

    def __init__(self, node: int, parents: Iterable[int], reason: str) -> None:
        self.node = node
        self.parents = tuple(parents)
        super().__init__(f"parent set {self.parents} of node {node} is not permissible: {reason}")


def _join(items: Iterable) -> str:
    return ", ".join(str(item) for item in items)


__all__ = [
    "StructureMCMCError",
    "ConfigurationError",
    "ScoreTableMismatch",
    "ValidationError",
    "OrderValidationError",
    "InvalidParentSet",
]
