"""Error taxonomy for the IAC marginal structural model pipeline."""

from __future__ import annotations

import numpy as np


class MSMPipelineError(Exception):
    """Base class for fatal pipeline errors."""


class SchemaError(MSMPipelineError, ValueError):
    """Required column missing, or a column typed inconsistently with the schema."""


class ConvergenceError(MSMPipelineError, RuntimeError):
    """A logistic regression did not converge (e.g. perfect separation)."""


class DegenerateWeightError(MSMPipelineError, ValueError):
    """A propensity score outside (0, 1) would produce an undefined weight."""


class SingularMatrixError(MSMPipelineError, np.linalg.LinAlgError):
    """The sandwich bread matrix cannot be inverted."""
