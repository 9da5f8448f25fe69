"""
Guided diffusion bridge package.

A JAX implementation of guided proposals for diffusion processes observed
discretely and with noise: declare an SDE, simulate it with Euler-Maruyama,
and simulate bridges conditioned on observations together with their
Girsanov log-likelihood-ratio weights.
"""

__version__ = "0.1.0"

from guidedbridge.errors import (
    GuidedBridgeError,
    InvalidGridError,
    DimensionMismatchError,
    InvalidObservationError,
    SingularDiffusivityError,
    GuidingTermDivergenceError,
    NumericalInstabilityError,
)
from guidedbridge.utils.t_grid import TimeGrid
from guidedbridge.utils.sample_path import SamplePath
from guidedbridge.stochastic_processes.unconds import (
    ContinuousTimeProcess,
    ProcessModel,
    AuxiliaryProcess,
    LinearAuxiliaryProcess,
    linearized_auxiliary,
)
from guidedbridge.stochastic_processes.conds import GuidedBridgeProcess
from guidedbridge.stochastic_processes.examples import DiffusionCatalog, default_catalog
from guidedbridge.observations import (
    Observation,
    GaussianStartingPoint,
    KnownStartingPoint,
    Recording,
    AllObservations,
)
from guidedbridge.solvers.sde import WienerProcess, SDESolver, Euler
from guidedbridge.solvers.ode import BackwardODE, GuidingTerm, observation_update
from guidedbridge.models.guided_proposal import (
    BridgeResult,
    GuidedSegment,
    GuidedProposal,
    forward_guide,
    forward_guide_segment,
)
from guidedbridge.models.parallel import simulate_recordings

__all__ = [
    "GuidedBridgeError",
    "InvalidGridError",
    "DimensionMismatchError",
    "InvalidObservationError",
    "SingularDiffusivityError",
    "GuidingTermDivergenceError",
    "NumericalInstabilityError",
    "TimeGrid",
    "SamplePath",
    "ContinuousTimeProcess",
    "ProcessModel",
    "AuxiliaryProcess",
    "LinearAuxiliaryProcess",
    "linearized_auxiliary",
    "GuidedBridgeProcess",
    "DiffusionCatalog",
    "default_catalog",
    "Observation",
    "GaussianStartingPoint",
    "KnownStartingPoint",
    "Recording",
    "AllObservations",
    "WienerProcess",
    "SDESolver",
    "Euler",
    "BackwardODE",
    "GuidingTerm",
    "observation_update",
    "BridgeResult",
    "GuidedSegment",
    "GuidedProposal",
    "forward_guide",
    "forward_guide_segment",
    "simulate_recordings",
]
