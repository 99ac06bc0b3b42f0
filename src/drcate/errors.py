"""Error and warning types raised by the nuisance engine.

Configuration problems are detected before any model is fitted. Fit
failures abort the outer-fold pass that produced them and carry enough
context (nuisance function, outer fold, library member, inner fold) to
tell the caller which library to adjust.
"""

from __future__ import annotations

from typing import Any


class DrCateError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(DrCateError, ValueError):
    """Invalid fold count, family, truncation level or learner library."""


class EnsembleFitFailure(DrCateError, RuntimeError):
    """A base learner failed while an ensemble was being fitted.

    Attributes:
        nuisance: Nuisance function being fitted ("outcome", "treatment", "missingness")
        outer_fold: Outer fold held out of the failing pass
        library: Library member that raised
        inner_fold: Inner fold whose complement was being fitted (None for the full refit)
    """

    def __init__(
        self,
        message: str,
        nuisance: str | None = None,
        outer_fold: int | None = None,
        library: str | None = None,
        inner_fold: int | None = None,
    ):
        self.reason = message
        self.nuisance = nuisance
        self.outer_fold = outer_fold
        self.library = library
        self.inner_fold = inner_fold
        super().__init__(self._render())

    def _render(self) -> str:
        context = []
        if self.nuisance is not None:
            context.append(f"nuisance={self.nuisance}")
        if self.outer_fold is not None:
            context.append(f"outer_fold={self.outer_fold}")
        if self.library is not None:
            context.append(f"library={self.library}")
        if self.inner_fold is not None:
            context.append(f"inner_fold={self.inner_fold}")
        if not context:
            return self.reason
        return f"{self.reason} ({', '.join(context)})"

    def with_context(self, **context: Any) -> "EnsembleFitFailure":
        """Return a copy with additional context fields filled in.

        Fields already set are kept; only missing ones are taken from ``context``.
        """
        fields = {
            "nuisance": self.nuisance,
            "outer_fold": self.outer_fold,
            "library": self.library,
            "inner_fold": self.inner_fold,
        }
        for key, value in context.items():
            if key not in fields:
                raise TypeError(f"Unknown EnsembleFitFailure context field '{key}'")
            if fields[key] is None:
                fields[key] = value
        return EnsembleFitFailure(self.reason, **fields)


class DegenerateFoldWarning(UserWarning):
    """An inner fold (or one group's share of it) ended up empty."""
