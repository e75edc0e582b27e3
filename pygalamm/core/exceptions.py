"""
Exception and warning hierarchy for pygalamm.

All exceptions inherit from PyGalammError so callers can catch any
library-specific failure. Numerical-quality problems are not exceptions:
they are warnings (subclasses of PyGalammWarning) that are emitted and
also attached to an otherwise completed result.

Design principles:
    - Structural and configuration problems fail fast, before optimization
    - Error messages are actionable with actual vs expected values
    - Warnings carry diagnostic attributes so results can be inspected later
"""


class PyGalammError(Exception):
    """Base exception for all pygalamm errors."""
    pass


class ValidationError(PyGalammError):
    """
    Input validation failed.

    Raised when user-provided arrays fail shape or finiteness checks.
    """
    pass


class ConfigurationError(ValidationError):
    """
    The model configuration is inconsistent.

    Raised before any optimization starts, e.g. when the number of
    families does not match the family mapping, the data are empty,
    the weights structure uses more than one grouping term, or a
    control/start value is invalid.
    """
    pass


class StructuralMismatch(ValidationError):
    """
    A factor loading template does not fit the design.

    Raised while building the loading mappings, typically when the levels
    of the loading grouping variable do not align one-to-one with the
    rows of the loading template.

    Attributes:
        block: Index of the offending loading block, if known
        expected: Expected count (e.g. number of template rows)
        actual: Observed count (e.g. number of grouping levels)
    """

    def __init__(
        self,
        message: str,
        block: int | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ):
        super().__init__(message)
        self.block = block
        self.expected = expected
        self.actual = actual


class PyGalammWarning(Warning):
    """Base class for all pygalamm warnings."""
    pass


class NumericalNonConvergence(PyGalammWarning, RuntimeWarning):
    """
    An iterative stage stopped at its iteration cap.

    Non-fatal: the last iterate is kept and the condition is attached to
    the evaluation or fit result for the caller to inspect.

    Attributes:
        stage: 'conditional_modes' (inner solver) or 'optimizer' (outer)
        iterations: Number of iterations completed
        final_change: Last relative change of the monitored criterion
        threshold: The tolerance that was not met
    """

    def __init__(
        self,
        message: str,
        stage: str,
        iterations: int,
        final_change: float | None = None,
        threshold: float | None = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.iterations = iterations
        self.final_change = final_change
        self.threshold = threshold


class BoundsViolation(PyGalammWarning, UserWarning):
    """
    Supplied starting values were outside the parameter bounds.

    The offending values are clamped to the nearest bound.

    Attributes:
        indices: Positions in the parameter vector that were clamped
    """

    def __init__(self, message: str, indices: tuple[int, ...] = ()):
        super().__init__(message)
        self.indices = indices
