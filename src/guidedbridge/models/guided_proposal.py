""" Guided proposals for discretely and noisily observed diffusions.

The backward pass builds one ``GuidedSegment`` per observation interval,
starting from the last observation. The forward pass simulates the guided
process segment by segment with Euler-Maruyama and accumulates the log
likelihood ratio between the true conditioned process and the proposal.
"""
from guidedbridge.setups import *
from guidedbridge.errors import DimensionMismatchError, NumericalInstabilityError
from guidedbridge.utils.t_grid import TimeGrid
from guidedbridge.utils.sample_path import SamplePath
from guidedbridge.stochastic_processes.unconds import (
    ContinuousTimeProcess, AuxiliaryProcess, AuxFactory
)
from guidedbridge.stochastic_processes.conds import GuidedBridgeProcess
from guidedbridge.observations import Observation, Recording
from guidedbridge.solvers.ode import (
    BackwardODE, GuidingTerm, SolveState, observation_update, terminal_state
)
from guidedbridge.solvers.sde import Euler, WienerProcess

class BridgeResult(NamedTuple):
    success: bool
    log_likelihood_ratio: float
    paths: List[SamplePath]

    @property
    def trajectory(self) -> SamplePath:
        """ All simulated segments joined into one path. """
        return SamplePath.concatenate(self.paths, name="Guided bridge")

    def raise_for_failure(self) -> "BridgeResult":
        if not self.success:
            raise NumericalInstabilityError(
                f"Guided bridge failed after {len(self.paths)} segment(s), "
                f"log likelihood ratio {self.log_likelihood_ratio}"
            )
        return self

class GuidedSegment:
    """ Guiding term of one observation interval [t0, T] and the solvers using it.

    Solvers are created once per process and kept, so repeated simulations
    reuse the compiled forward pass.
    """
    X_aux: AuxiliaryProcess
    guiding: GuidingTerm
    observation: Observation
    tGrid: TimeGrid

    def __init__(self,
                 X_aux: AuxiliaryProcess,
                 guiding: GuidingTerm,
                 observation: Observation,
                 tGrid: TimeGrid,
                 W: Optional[WienerProcess] = None):
        self.X_aux = X_aux
        self.guiding = guiding
        self.observation = observation
        self.tGrid = tGrid
        self.W = W if W is not None else WienerProcess(X_aux.noise_dim)
        self._solvers = {}

    @property
    def t0(self) -> float:
        return self.tGrid.t0

    @property
    def T(self) -> float:
        return self.tGrid.T

    @property
    def n_steps(self) -> int:
        return self.tGrid.n_steps

    @property
    def start_state(self) -> SolveState:
        return SolveState(H=self.guiding.Hs[0], F=self.guiding.Fs[0], c=self.guiding.cs[0])

    def solver(self, X: ContinuousTimeProcess) -> Euler:
        key = id(X)
        if key not in self._solvers:
            X_guided = GuidedBridgeProcess(X, self.X_aux, self.guiding)
            self._solvers[key] = (X, Euler(X_guided, self.W, self.tGrid))
        return self._solvers[key][1]

    def __repr__(self) -> str:
        return f"GuidedSegment([{self.t0:g}, {self.T:g}], n_steps={self.n_steps}, aux={self.X_aux.__class__.__name__})"

def backward_filter(
    X: ContinuousTimeProcess,
    recording: Recording,
    aux_factory: AuxFactory,
    dt: float,
    t_scheme: str = "linear",
    ode_kernel: str = "auto",
    psd_atol: float = 1e-8
) -> Tuple[List[GuidedSegment], SolveState]:
    """ Solve for the guiding terms of every segment, last segment first.

    Each segment is seeded with the guiding information at the start of the following
    segment, updated with the observation that separates them. An observation at the
    start time only enters the returned start state.

    Returns:
        segments in time order and the guiding information (H, F, c) at recording.t0.
    """
    observations = recording.segment_observations
    state = terminal_state(X.dim)
    segments = []
    for k in reversed(range(len(observations))):
        obs = observations[k]
        t_start = observations[k - 1].t if k > 0 else recording.t0
        state = observation_update(state, obs.L, obs.v, obs.Sigma)
        X_aux = aux_factory(X, t_start, obs.t, obs.v, L=obs.L)
        if X_aux.dim != X.dim or X_aux.noise_dim != X.noise_dim:
            raise DimensionMismatchError(
                f"Auxiliary process has dimensions ({X_aux.dim}, {X_aux.noise_dim}), "
                f"process has ({X.dim}, {X.noise_dim})"
            )
        tGrid = TimeGrid(T=obs.t, dt=dt, t0=t_start, t_scheme=t_scheme)
        guiding = BackwardODE(X_aux, kernel=ode_kernel, psd_atol=psd_atol).solve(tGrid.ts, state)
        segment = GuidedSegment(X_aux, guiding, obs, tGrid)
        logging.debug(f"Guiding term ready on [{t_start:g}, {obs.t:g}] with {tGrid.n_steps} steps")
        segments.append(segment)
        state = segment.start_state

    initial = recording.initial_observation
    if initial is not None:
        state = observation_update(state, initial.L, initial.v, initial.Sigma)
    return segments[::-1], state

def forward_guide_segment(
    segment: GuidedSegment,
    X: ContinuousTimeProcess,
    x0: xTYPE,
    rng_key: jax.Array = DEFAULT_RNG_KEY,
    dWs: Optional[jnp.ndarray] = None,
    log_weight_bound: float = 1e10
) -> BridgeResult:
    """ Simulate the guided process over one segment.

    The run fails when some state or the log likelihood ratio is not finite, or when
    the absolute log likelihood ratio exceeds log_weight_bound. Failures are reported
    through ``success``, never raised.
    """
    path = segment.solver(X).solve(
        x0, rng_key=rng_key, dWs=dWs, batch_size=1, compute_log_likelihood_ratio=True
    )
    log_likelihood_ratio = float(path.log_likelihood_ratio[0])
    success = (
        bool(path.is_finite()[0])
        and np.isfinite(log_likelihood_ratio)
        and abs(log_likelihood_ratio) <= log_weight_bound
    )
    return BridgeResult(success=bool(success), log_likelihood_ratio=log_likelihood_ratio, paths=[path])

def forward_guide(
    segments: Sequence[GuidedSegment],
    X: ContinuousTimeProcess,
    x0: xTYPE,
    rng_key: jax.Array = DEFAULT_RNG_KEY,
    dWs: Optional[Sequence[jnp.ndarray]] = None,
    log_weight_bound: float = 1e10
) -> BridgeResult:
    """ Simulate the guided process over consecutive segments.

    Each segment starts at the last state of the previous one. The run stops at the
    first failed segment; the paths simulated so far are kept in the result.

    Args:
        segments: segments in time order.
        X: the unconditioned process.
        x0: starting point at the start of the first segment.
        rng_key: split into one key per segment; ignored when dWs are given.
        dWs: optional noise increments, one array per segment.
        log_weight_bound: largest accepted absolute log likelihood ratio per segment.
    """
    if len(segments) == 0:
        raise ValueError("Need at least one segment to simulate")
    if dWs is not None and len(dWs) != len(segments):
        raise DimensionMismatchError(f"{len(dWs)} noise paths given for {len(segments)} segments")
    keys = jax.random.split(rng_key, len(segments))
    x = jnp.asarray(x0, dtype=DEFAULT_DTYPE)
    log_likelihood_ratio = 0.0
    paths = []
    for k, segment in enumerate(segments):
        result = forward_guide_segment(
            segment, X, x,
            rng_key=keys[k],
            dWs=None if dWs is None else dWs[k],
            log_weight_bound=log_weight_bound
        )
        paths.extend(result.paths)
        log_likelihood_ratio += result.log_likelihood_ratio
        if not result.success:
            logging.warning(
                f"Guided forward pass failed on segment {k} [{segment.t0:g}, {segment.T:g}], "
                f"log likelihood ratio {result.log_likelihood_ratio}"
            )
            return BridgeResult(success=False, log_likelihood_ratio=log_likelihood_ratio, paths=paths)
        x = result.paths[0].xs[0, -1]
    return BridgeResult(success=True, log_likelihood_ratio=log_likelihood_ratio, paths=paths)

class GuidedProposal:
    """ Guided proposal for one recording.

    The backward pass runs once at construction; ``simulate`` only runs forward passes.
    A proposal is bound to its process parameters, ``with_parameters`` builds a new one.

    Args:
        recording: observations, process and starting point prior.
        aux_factory: builds the auxiliary process of a segment, called as
            aux_factory(X, t0, T, vT, L) with the closing observation of the segment.
        dt: target time step of the segment grids.
        t_scheme: "linear" or "quadratic" grid spacing.
        ode_kernel: backward stepping rule, see ``BackwardODE``.
        psd_atol: tolerance of the positive semi-definiteness check on H.
        log_weight_bound: largest accepted absolute log likelihood ratio per segment.
    """

    def __init__(self,
                 recording: Recording,
                 aux_factory: AuxFactory,
                 dt: float = 1e-2,
                 t_scheme: str = "linear",
                 ode_kernel: str = "auto",
                 psd_atol: float = 1e-8,
                 log_weight_bound: float = 1e10):
        self.recording = recording
        self.X = recording.X
        self.aux_factory = aux_factory
        self.dt = dt
        self.t_scheme = t_scheme
        self.ode_kernel = ode_kernel
        self.psd_atol = psd_atol
        self.log_weight_bound = log_weight_bound

        self.segments, self.start_state = backward_filter(
            self.X, recording, aux_factory,
            dt=dt, t_scheme=t_scheme, ode_kernel=ode_kernel, psd_atol=psd_atol
        )
        logging.info(f"Guided proposal with {len(self.segments)} segment(s) on [{recording.t0:g}, {recording.T:g}]")

    @classmethod
    def from_config(cls, config, catalog=None) -> "GuidedProposal":
        from guidedbridge.utils.read_config import build_recording
        recording, aux_factory = build_recording(config, catalog)
        solver = config["solver"]
        return cls(
            recording, aux_factory,
            dt=solver["dt"],
            t_scheme=solver["t_scheme"],
            ode_kernel=solver["ode_kernel"],
            psd_atol=solver["psd_atol"],
            log_weight_bound=solver["log_weight_bound"]
        )

    def with_parameters(self, **updates: float) -> "GuidedProposal":
        recording = Recording(
            self.X.with_parameters(**updates),
            self.recording.observations,
            self.recording.t0,
            self.recording.x0_prior
        )
        return GuidedProposal(
            recording, self.aux_factory,
            dt=self.dt,
            t_scheme=self.t_scheme,
            ode_kernel=self.ode_kernel,
            psd_atol=self.psd_atol,
            log_weight_bound=self.log_weight_bound
        )

    def log_rho_tilde(self, x0: xTYPE) -> jnp.ndarray:
        """ log h(t0, x0): log density of all observations under the auxiliary processes. """
        H, F, c = self.start_state
        return c + jnp.dot(F, x0) - 0.5 * jnp.einsum("i, i j, j -> ", x0, H, x0)

    def starting_point_proposal(self, guided_start: bool = False):
        prior = self.recording.x0_prior
        return prior.guided_proposal(self.start_state.H, self.start_state.F) if guided_start else prior

    def sample_starting_point(self, rng_key: jax.Array, guided_start: bool = False) -> xTYPE:
        return self.starting_point_proposal(guided_start).rand(rng_key)

    def simulate(self,
                 rng_key: jax.Array = DEFAULT_RNG_KEY,
                 x0: Optional[xTYPE] = None,
                 dWs: Optional[Sequence[jnp.ndarray]] = None,
                 guided_start: bool = False) -> BridgeResult:
        """ One guided bridge; x0 is drawn from the (guided) starting point proposal unless given. """
        start_key, path_key = jax.random.split(rng_key)
        if x0 is None:
            x0 = self.sample_starting_point(start_key, guided_start)
        return forward_guide(
            self.segments, self.X, x0,
            rng_key=path_key, dWs=dWs, log_weight_bound=self.log_weight_bound
        )

    def log_likelihood(self,
                       result: BridgeResult,
                       x0: Optional[xTYPE] = None,
                       guided_start: bool = False) -> float:
        """ Importance sampling estimate of the log likelihood of the observations.

        log h(t0, x0) + log likelihood ratio estimates log p(observations | x0). With
        ``guided_start`` x0 is taken as drawn from the guided starting point proposal,
        and the prior to proposal density ratio is added. Failed results give -inf.
        """
        if not result.success:
            return -np.inf
        if x0 is None:
            x0 = result.paths[0].xs[0, 0]
        log_likelihood = self.log_rho_tilde(x0) + result.log_likelihood_ratio
        prior = self.recording.x0_prior
        if guided_start and not prior.known:
            proposal = self.starting_point_proposal(guided_start=True)
            log_likelihood = log_likelihood + prior.logpdf(x0) - proposal.logpdf(x0)
        return float(log_likelihood)
