"""
Exceptions raised by the diffusion bridge core.

Grid, dimension and observation errors are raised immediately and mean the
caller has to fix its input. Numerical divergence of a forward pass is *not*
raised by the simulators; it is reported through ``BridgeResult.success`` and
only turned into a ``NumericalInstabilityError`` on request.
"""


class GuidedBridgeError(Exception):
    """Base class of every error raised by guidedbridge."""


class InvalidGridError(GuidedBridgeError, ValueError):
    """Time grid has fewer than two points or is not strictly increasing."""


class DimensionMismatchError(GuidedBridgeError, ValueError):
    """A state, drift, diffusion or noise array disagrees with the declared dimensions."""


class InvalidObservationError(GuidedBridgeError, ValueError):
    """Observation data is malformed (non-finite, asymmetric or indefinite covariance, bad ordering)."""


class SingularDiffusivityError(GuidedBridgeError, ArithmeticError):
    """Auxiliary diffusion cannot be used where the guiding term needs it."""


class GuidingTermDivergenceError(GuidedBridgeError, ArithmeticError):
    """Backward filtering left the cone of positive semi-definite matrices or became non-finite."""


class NumericalInstabilityError(GuidedBridgeError, ArithmeticError):
    """A forward-simulated state became non-finite."""
