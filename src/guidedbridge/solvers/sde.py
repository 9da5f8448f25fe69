from guidedbridge.setups import *
from guidedbridge.errors import (
    DimensionMismatchError, InvalidGridError, NumericalInstabilityError
)
from guidedbridge.utils.sample_path import SamplePath
from guidedbridge.utils.t_grid import TimeGrid, check_grid
from guidedbridge.stochastic_processes.unconds import ContinuousTimeProcess

SolveState = namedtuple("SolveState", ["x", "log_likelihood_ratio"])

class WienerProcess:
    """ Increments of a standard dim-dimensional Wiener process on a time grid. """
    dim: int
    dtype: Optional[jnp.dtype] = DEFAULT_DTYPE

    def __init__(self, dim: int):
        self.dim = dim

    def _check_dts(self, dts: Sequence[tTYPE]) -> jnp.ndarray:
        dts = jnp.asarray(dts, dtype=self.dtype)
        if dts.ndim != 1 or dts.shape[0] < 1:
            raise InvalidGridError(f"Need at least one time step, got shape {dts.shape}")
        if not bool(jnp.all(jnp.isfinite(dts) & (dts > 0.0))):
            raise InvalidGridError("Time steps must be positive and finite")
        return dts

    def sample(self, rng_key: jax.Array, dts: Sequence[tTYPE], batch_size: int = 1) -> xTYPE:
        """ Independent increments dW_i ~ N(0, dts[i] I), shape (batch_size, n_steps, dim). """
        dts = self._check_dts(dts)
        z = jax.random.normal(rng_key, (batch_size, dts.shape[0], self.dim), dtype=self.dtype)
        dWs = z * jnp.sqrt(dts)[jnp.newaxis, :, jnp.newaxis]
        return dWs

    def sample_path(self, rng_key: jax.Array, ts: Sequence[tTYPE], batch_size: int = 1, cumulative: bool = True) -> SamplePath:
        ts = check_grid(ts, self.dtype)
        dts = jnp.diff(ts)
        dWs = self.sample(rng_key, dts, batch_size)
        path = SamplePath(name="Wiener process sample path", ts=ts, dts=dts, dWs=dWs)
        if cumulative:
            Ws = jnp.concatenate([jnp.zeros((batch_size, 1, self.dim), dtype=self.dtype), jnp.cumsum(dWs, axis=1)], axis=1)
            path.add("xs", Ws)
        return path

    def get_path_sampler(self, rng_key: jax.Array, dts: Sequence[tTYPE], batch_size: int = 1) -> Generator[xTYPE, None, None]:
        while True:
            rng_key, sub_key = jax.random.split(rng_key)
            yield self.sample(sub_key, dts, batch_size)

class SDESolver(abc.ABC):
    X: ContinuousTimeProcess
    W: WienerProcess
    tGrid: TimeGrid

    def __init__(
        self,
        X: ContinuousTimeProcess,
        W: Optional[WienerProcess] = None,
        tGrid: Union[TimeGrid, Sequence[tTYPE]] = None
    ):
        if tGrid is None:
            raise InvalidGridError("A time grid is required")
        self.X = X
        self.W = W if W is not None else WienerProcess(X.noise_dim)
        self.tGrid = tGrid if isinstance(tGrid, TimeGrid) else TimeGrid.from_ts(tGrid)
        if self.W.dim != X.noise_dim:
            raise DimensionMismatchError(f"Wiener process has dimension {self.W.dim}, process expects {X.noise_dim}")
        self._dims_checked = False

    @abc.abstractmethod
    def _step(self, x: xTYPE, t: tTYPE, dt: tTYPE, dW: xTYPE) -> xTYPE:
        pass

    def _prepare_inputs(self, x0: jnp.ndarray, rng_key: jax.Array, dWs: Optional[jnp.ndarray], batch_size: int):
        x0 = jnp.asarray(x0, dtype=self.X.dtype)
        if x0.ndim not in (1, 2) or x0.shape[-1] != self.X.dim:
            raise DimensionMismatchError(f"Starting point has shape {x0.shape}, expected ({self.X.dim},) or (batch, {self.X.dim})")
        if not self._dims_checked:
            self.X.check_dims(self.tGrid.ts[0], x0 if x0.ndim == 1 else x0[0])
            self._dims_checked = True

        if dWs is None:
            if x0.ndim == 2:
                batch_size = x0.shape[0]
            dWs = self.W.sample(rng_key, self.tGrid.dts, batch_size)
        else:
            dWs = jnp.asarray(dWs, dtype=self.X.dtype)
            if dWs.ndim == 2:
                dWs = dWs[jnp.newaxis, ...]
            if dWs.ndim != 3 or dWs.shape[1:] != (self.tGrid.n_steps, self.X.noise_dim):
                raise DimensionMismatchError(
                    f"Noise increments have shape {dWs.shape}, expected (batch, {self.tGrid.n_steps}, {self.X.noise_dim})"
                )
        batch_size = dWs.shape[0]

        if x0.ndim == 1:
            x0s = repeat(x0, "i -> b i", b=batch_size)
        elif x0.shape[0] != batch_size:
            raise DimensionMismatchError(f"{x0.shape[0]} starting points given for {batch_size} noise paths")
        else:
            x0s = x0
        return x0s, dWs

    @partial(jax.jit, static_argnums=(0, 3))
    def _solve(self, x0s: jnp.ndarray, dWs: jnp.ndarray, compute_log_likelihood_ratio: bool):
        ts, dts = self.tGrid.ts, self.tGrid.dts

        def scan_fn(solver_state: SolveState, carry_args: tuple) -> tuple:
            t, dt, dW = carry_args
            x_new = self._step(x=solver_state.x, t=t, dt=dt, dW=dW)
            G_val = self.X.G(t, solver_state.x) if compute_log_likelihood_ratio else 0.0
            new_state = SolveState(
                x=x_new,
                log_likelihood_ratio=solver_state.log_likelihood_ratio + G_val * dt
            )
            return new_state, x_new

        def solve_single(x0: jnp.ndarray, dW: jnp.ndarray) -> tuple:
            init_state = SolveState(x=x0, log_likelihood_ratio=jnp.zeros((), dtype=x0.dtype))
            final_state, xs = jax.lax.scan(
                scan_fn,
                init=init_state,
                xs=(ts[:-1], dts, dW),
                length=self.tGrid.n_steps
            )
            return jnp.concatenate([x0[jnp.newaxis, :], xs], axis=0), final_state.log_likelihood_ratio

        return jax.vmap(solve_single, in_axes=(0, 0))(x0s, dWs)

    def solve(
        self,
        x0: jnp.ndarray,
        rng_key: jax.Array = DEFAULT_RNG_KEY,
        dWs: Optional[jnp.ndarray] = None,
        batch_size: int = 1,
        compute_log_likelihood_ratio: bool = False,
        check_finite: bool = False
    ) -> SamplePath:
        """ Integrate the process over the time grid.

        Args:
            x0: starting point, shape (dim,) or (batch, dim).
            rng_key: key for the noise increments, ignored when dWs are given.
            dWs: pre-generated increments of shape (batch, n_steps, noise_dim) or (n_steps, noise_dim).
            batch_size: number of paths when neither x0 nor dWs carry a batch axis.
            compute_log_likelihood_ratio: accumulate sum_i G(t_i, x_i) dt_i, the process must define G.
            check_finite: raise NumericalInstabilityError when some state is not finite.

        Returns:
            SamplePath with xs (batch, n_steps + 1, dim), ts, dts, dWs and log_likelihood_ratio (batch,).
        """
        if compute_log_likelihood_ratio:
            assert hasattr(self.X, "G"), "current SDE does not support computing likelihood ratio"
        x0s, dWs = self._prepare_inputs(x0, rng_key, dWs, batch_size)
        xs, log_likelihood_ratio = self._solve(x0s, dWs, compute_log_likelihood_ratio)
        assert xs.shape[1] == self.tGrid.n_steps + 1

        path = SamplePath(
            name=f"{self.X.__class__.__name__} sample path",
            xs=xs,
            ts=self.tGrid.ts,
            dts=self.tGrid.dts,
            dWs=dWs,
            log_likelihood_ratio=log_likelihood_ratio
        )
        if check_finite:
            finite = path.is_finite()
            if not bool(jnp.all(finite)):
                idx = int(jnp.argmin(finite))
                raise NumericalInstabilityError(f"Sample {idx} of {self.X.__class__.__name__} became non-finite")
        return path

class Euler(SDESolver):
    """ Euler-Maruyama: x_{i+1} = x_i + f(t_i, x_i) dt_i + g(t_i, x_i) dW_i. """

    def _step(self, x: xTYPE, t: tTYPE, dt: tTYPE, dW: xTYPE) -> xTYPE:
        drift = self.X.f(t, x)
        diffusivity = self.X.g(t, x)
        return x + drift * dt + jnp.einsum("i j, j -> i", diffusivity, dW)
