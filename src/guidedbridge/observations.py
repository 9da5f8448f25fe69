""" Discrete, noisy, linear observations of a diffusion.

An ``Observation`` records v = L x(t) + eta with eta ~ N(0, Sigma). A
``Recording`` bundles the observations of one experimental unit with its
process and a prior on the starting point; ``AllObservations`` collects
independent recordings.
"""
from dataclasses import dataclass
from guidedbridge.setups import *
from guidedbridge.errors import DimensionMismatchError, InvalidObservationError
from guidedbridge.stochastic_processes.unconds import ContinuousTimeProcess

def _symmetric_psd(name: str, M: jnp.ndarray, atol: float = 1e-10) -> None:
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise InvalidObservationError(f"{name} must be a square matrix, got shape {M.shape}")
    if not bool(jnp.all(jnp.isfinite(M))):
        raise InvalidObservationError(f"{name} contains non-finite values")
    if not bool(jnp.allclose(M, M.T, atol=atol)):
        raise InvalidObservationError(f"{name} must be symmetric")
    eigvals = jnp.linalg.eigvalsh(M)
    if float(eigvals[0]) < -atol * max(1.0, float(jnp.max(jnp.abs(eigvals)))):
        raise InvalidObservationError(f"{name} must be positive semi-definite, smallest eigenvalue {float(eigvals[0]):.3g}")

@dataclass(frozen=True, eq=False)
class Observation:
    t: float
    v: jnp.ndarray
    L: jnp.ndarray
    Sigma: jnp.ndarray

    def __post_init__(self):
        t = float(self.t)
        if not np.isfinite(t):
            raise InvalidObservationError(f"Observation time must be finite, got {t}")
        v = jnp.atleast_1d(jnp.asarray(self.v, dtype=DEFAULT_DTYPE))
        L = jnp.asarray(self.L, dtype=DEFAULT_DTYPE)
        Sigma = jnp.atleast_2d(jnp.asarray(self.Sigma, dtype=DEFAULT_DTYPE))
        if v.ndim != 1:
            raise DimensionMismatchError(f"Observed value must be a vector, got shape {v.shape}")
        if not bool(jnp.all(jnp.isfinite(v))):
            raise InvalidObservationError(f"Observed value at t={t} contains non-finite entries")
        if L.ndim != 2 or L.shape[0] != v.shape[0]:
            raise DimensionMismatchError(f"Observation operator has shape {L.shape}, expected ({v.shape[0]}, state_dim)")
        if not bool(jnp.all(jnp.isfinite(L))):
            raise InvalidObservationError(f"Observation operator at t={t} contains non-finite entries")
        _symmetric_psd("Observation noise covariance", Sigma)
        if Sigma.shape[0] != v.shape[0]:
            raise DimensionMismatchError(f"Observation noise covariance has shape {Sigma.shape}, expected {(v.shape[0], v.shape[0])}")
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "v", v)
        object.__setattr__(self, "L", L)
        object.__setattr__(self, "Sigma", Sigma)

    @property
    def obs_dim(self) -> int:
        return self.v.shape[0]

    @property
    def state_dim(self) -> int:
        return self.L.shape[1]

    @classmethod
    def from_nan_masked(cls, t: float, v: Sequence[float], eps: float = 1e-6) -> "Observation":
        """ Observe the non-NaN coordinates of v directly, each with noise variance eps. """
        v = np.asarray(v, dtype=np.float64)
        mask = ~np.isnan(v)
        if not mask.any():
            raise InvalidObservationError(f"Observation at t={t} has no observed coordinates")
        L = np.eye(v.shape[0])[mask]
        return cls(t=t, v=v[mask], L=L, Sigma=eps * np.eye(int(mask.sum())))

    def log_likelihood(self, x: xTYPE) -> jnp.ndarray:
        """ log N(v; L x, Sigma) """
        mean = jnp.einsum("i j, j -> i", self.L, x)
        return jsp.stats.multivariate_normal.logpdf(self.v, mean, self.Sigma)

class StartingPointPrior(abc.ABC):
    dim: int
    known: bool = False

    @abc.abstractmethod
    def rand(self, rng_key: jax.Array) -> xTYPE:
        pass

    @abc.abstractmethod
    def logpdf(self, x: xTYPE) -> jnp.ndarray:
        pass

    @abc.abstractmethod
    def guided_proposal(self, H: jnp.ndarray, F: jnp.ndarray) -> "StartingPointPrior":
        pass

class GaussianStartingPoint(StartingPointPrior):
    """ x0 ~ N(mean, cov). """

    def __init__(self, mean: xTYPE, cov: jnp.ndarray):
        self.mean = jnp.atleast_1d(jnp.asarray(mean, dtype=DEFAULT_DTYPE))
        self.dim = self.mean.shape[0]
        cov = jnp.asarray(cov, dtype=DEFAULT_DTYPE)
        if cov.ndim == 0:
            cov = cov * jnp.eye(self.dim, dtype=DEFAULT_DTYPE)
        if cov.shape != (self.dim, self.dim):
            raise DimensionMismatchError(f"Prior covariance has shape {cov.shape}, expected {(self.dim, self.dim)}")
        _symmetric_psd("Prior covariance", cov)
        self.cov = cov
        self.chol = jnp.linalg.cholesky(cov)
        if not bool(jnp.all(jnp.isfinite(self.chol))):
            raise InvalidObservationError("Prior covariance must be positive definite")

    def rand(self, rng_key: jax.Array) -> xTYPE:
        z = jax.random.normal(rng_key, (self.dim, ), dtype=DEFAULT_DTYPE)
        return self.mean + jnp.einsum("i j, j -> i", self.chol, z)

    def logpdf(self, x: xTYPE) -> jnp.ndarray:
        return jsp.stats.multivariate_normal.logpdf(x, self.mean, self.cov)

    def guided_proposal(self, H: jnp.ndarray, F: jnp.ndarray) -> "GaussianStartingPoint":
        """ Normalised product of the prior with the guiding function exp(F^T x - x^T H x / 2). """
        inv_cov = jsp.linalg.cho_solve((self.chol, True), jnp.eye(self.dim, dtype=DEFAULT_DTYPE))
        precision = inv_cov + H
        mean = jnp.linalg.solve(precision, inv_cov @ self.mean + F)
        cov = jnp.linalg.inv(precision)
        return GaussianStartingPoint(mean, 0.5 * (cov + cov.T))

    def __repr__(self) -> str:
        return f"GaussianStartingPoint(mean={np.asarray(self.mean)}, cov={np.asarray(self.cov).tolist()})"

class KnownStartingPoint(StartingPointPrior):
    """ Starting point known exactly. logpdf is 0 everywhere, the point mass carries no density. """
    known: bool = True

    def __init__(self, x0: xTYPE):
        self.x0 = jnp.atleast_1d(jnp.asarray(x0, dtype=DEFAULT_DTYPE))
        self.dim = self.x0.shape[0]
        if not bool(jnp.all(jnp.isfinite(self.x0))):
            raise InvalidObservationError("Known starting point must be finite")

    def rand(self, rng_key: jax.Array) -> xTYPE:
        return self.x0

    def logpdf(self, x: xTYPE) -> jnp.ndarray:
        return jnp.zeros((), dtype=DEFAULT_DTYPE)

    def guided_proposal(self, H: jnp.ndarray, F: jnp.ndarray) -> "KnownStartingPoint":
        return self

    def __repr__(self) -> str:
        return f"KnownStartingPoint(x0={np.asarray(self.x0)})"

class Recording:
    """ Observations of one process path.

    Args:
        X: the observed process.
        observations: observations with strictly increasing times, all at or after t0.
        t0: start time of the path. An observation exactly at t0 only informs the
            starting point, all later ones end a segment.
        x0_prior: prior of the starting point.
    """

    def __init__(self,
                 X: ContinuousTimeProcess,
                 observations: Sequence[Observation],
                 t0: float,
                 x0_prior: StartingPointPrior):
        self.X = X
        self.t0 = float(t0)
        self.observations = tuple(observations)
        self.x0_prior = x0_prior

        if not np.isfinite(self.t0):
            raise InvalidObservationError(f"Start time must be finite, got {t0}")
        if len(self.observations) == 0:
            raise InvalidObservationError("A recording needs at least one observation")
        if x0_prior.dim != X.dim:
            raise DimensionMismatchError(f"Starting point prior has dimension {x0_prior.dim}, process has {X.dim}")
        for obs in self.observations:
            if obs.state_dim != X.dim:
                raise DimensionMismatchError(
                    f"Observation at t={obs.t} acts on dimension {obs.state_dim}, process has {X.dim}"
                )
            if obs.t < self.t0:
                raise InvalidObservationError(f"Observation at t={obs.t} precedes start time {self.t0}")
        ts = np.array([obs.t for obs in self.observations])
        if np.any(np.diff(ts) <= 0.0):
            raise InvalidObservationError("Observation times must be strictly increasing")
        if ts[-1] <= self.t0:
            raise InvalidObservationError(f"A recording needs an observation after its start time {self.t0}")

    @property
    def initial_observation(self) -> Optional[Observation]:
        first = self.observations[0]
        return first if first.t == self.t0 else None

    @property
    def segment_observations(self) -> Tuple[Observation, ...]:
        """ Observations that close a segment, in time order. """
        return tuple(obs for obs in self.observations if obs.t > self.t0)

    @property
    def T(self) -> float:
        return self.observations[-1].t

    def __len__(self) -> int:
        return len(self.observations)

    def __repr__(self) -> str:
        return (f"Recording({self.X!r}, {len(self.observations)} observations on "
                f"[{self.t0:g}, {self.T:g}], x0_prior={self.x0_prior!r})")

class AllObservations:
    """ Independent recordings, insertion only. """

    def __init__(self, recordings: Optional[Sequence[Recording]] = None):
        self._recordings: List[Recording] = []
        for recording in recordings or []:
            self.add(recording)

    def add(self, recording: Recording) -> int:
        if not isinstance(recording, Recording):
            raise TypeError(f"Expected a Recording, got {type(recording).__name__}")
        self._recordings.append(recording)
        return len(self._recordings) - 1

    def __iter__(self):
        return iter(tuple(self._recordings))

    def __len__(self) -> int:
        return len(self._recordings)

    def __getitem__(self, idx: int) -> Recording:
        return self._recordings[idx]
