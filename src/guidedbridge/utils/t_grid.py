from dataclasses import dataclass, field
from guidedbridge.setups import *
from guidedbridge.errors import InvalidGridError

def check_grid(ts: Sequence[tTYPE], dtype: jnp.dtype = DEFAULT_DTYPE) -> jnp.ndarray:
    """ Validate a time grid and return it as a 1-d array.

    Raises:
        InvalidGridError: fewer than two points, non-finite or not strictly increasing.
    """
    ts = jnp.asarray(ts, dtype=dtype)
    if ts.ndim != 1 or ts.shape[0] < 2:
        raise InvalidGridError(f"Time grid needs at least 2 points, got shape {ts.shape}")
    if not bool(jnp.all(jnp.isfinite(ts))):
        raise InvalidGridError("Time grid contains non-finite values")
    if not bool(jnp.all(jnp.diff(ts) > 0.0)):
        raise InvalidGridError("Time grid must be strictly increasing")
    return ts

@dataclass(eq=False)
class TimeGrid:
    """ Time discretisation of [t0, T].

    The number of steps is ceil((T - t0) / dt); with the "linear" scheme the steps are
    equal (so dt is shrunk slightly when it does not divide the interval), with the
    "quadratic" scheme the points are pushed towards T, where guided drifts are stiffest.
    """
    T: float
    dt: float
    t0: float = 0.0
    t_scheme: Optional[str] = "linear"
    dtype: Optional[jnp.dtype] = DEFAULT_DTYPE
    ts: jnp.ndarray = field(init=False, repr=False)
    dts: jnp.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        if not self.T > self.t0:
            raise InvalidGridError(f"End time {self.T} must be larger than start time {self.t0}")
        if not self.dt > 0.0:
            raise InvalidGridError(f"Step size must be positive, got {self.dt}")

        self.T, self.t0 = float(self.T), float(self.t0)
        span = self.T - self.t0
        n_steps = max(int(np.ceil(span / self.dt - 1e-8)), 1)
        taus = jnp.linspace(0.0, span, n_steps + 1, dtype=self.dtype)
        if self.t_scheme == "linear":
            ts = self.t0 + taus
        elif self.t_scheme == "quadratic":
            ts = self.t0 + taus * (2.0 - taus / span)
        else:
            raise ValueError(f"Time scheme: {self.t_scheme} not found!")
        # pin the end points, the observation times must be hit exactly
        ts = ts.at[0].set(self.t0).at[-1].set(self.T)
        self.ts = check_grid(ts, self.dtype)
        self.dts = jnp.diff(self.ts)
        assert len(self.ts) == len(self.dts) + 1

    @classmethod
    def from_ts(cls, ts: Sequence[tTYPE], dtype: jnp.dtype = DEFAULT_DTYPE) -> "TimeGrid":
        ts = check_grid(ts, dtype)
        dts = jnp.diff(ts)
        grid = cls(T=float(ts[-1]), dt=float(jnp.max(dts)), t0=float(ts[0]), dtype=dtype)
        grid.t_scheme = "custom"
        grid.ts, grid.dts = ts, dts
        return grid

    @property
    def n_steps(self):
        return len(self.dts)
