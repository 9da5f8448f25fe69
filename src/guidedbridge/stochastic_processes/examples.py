from guidedbridge.setups import *
from guidedbridge.stochastic_processes.unconds import (
    ContinuousTimeProcess,
    ProcessModel,
    LinearAuxiliaryProcess,
    AuxFactory
)

CatalogEntry = namedtuple("CatalogEntry", ["build_process", "build_auxiliary", "default_params"])

# Brownian motion with drift

def brownian_drift(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return params["gamma"] * jnp.ones_like(x)

def brownian_diffusion(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return params["sigma"] * jnp.eye(x.shape[0], dtype=DEFAULT_DTYPE)

def brownian_process(params: Mapping[str, float], state_dim: int = 1) -> ProcessModel:
    return ProcessModel(state_dim, state_dim, params, brownian_drift, brownian_diffusion,
                        const_diffusivity=True, is_linear=True)

def brownian_auxiliary(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                       L: Optional[xTYPE] = None) -> LinearAuxiliaryProcess:
    return LinearAuxiliaryProcess(
        B=jnp.zeros((X.dim, X.dim)),
        beta=X.parameters["gamma"] * jnp.ones(X.dim),
        sigma=X.parameters["sigma"] * jnp.eye(X.dim),
        T=T, vT=vT
    )

# Ornstein-Uhlenbeck process, dX = -gamma (X - mu) dt + sigma dW

def ou_drift(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return -params["gamma"] * (x - params["mu"])

def ou_process(params: Mapping[str, float], state_dim: int = 1) -> ProcessModel:
    return ProcessModel(state_dim, state_dim, params, ou_drift, brownian_diffusion,
                        const_diffusivity=True, is_linear=True)

def ou_auxiliary(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                 L: Optional[xTYPE] = None) -> LinearAuxiliaryProcess:
    gamma = X.parameters["gamma"]
    return LinearAuxiliaryProcess(
        B=-gamma * jnp.eye(X.dim),
        beta=gamma * X.parameters["mu"] * jnp.ones(X.dim),
        sigma=X.parameters["sigma"] * jnp.eye(X.dim),
        T=T, vT=vT
    )

# Stochastic pendulum, angle x[0] and angular velocity x[1]

def pendulum_drift(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return jnp.array([x[1], -params["omega2"] * jnp.sin(x[0])], dtype=DEFAULT_DTYPE)

def pendulum_diffusion(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return jnp.array([[0.0], [params["sigma"]]], dtype=DEFAULT_DTYPE)

def pendulum_process(params: Mapping[str, float], state_dim: int = 2) -> ProcessModel:
    return ProcessModel(2, 1, params, pendulum_drift, pendulum_diffusion, const_diffusivity=True)

def pendulum_auxiliary(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                       L: Optional[xTYPE] = None) -> LinearAuxiliaryProcess:
    """ Small-angle approximation sin(x) ~ x. """
    return LinearAuxiliaryProcess(
        B=jnp.array([[0.0, 1.0], [-X.parameters["omega2"], 0.0]]),
        beta=jnp.zeros(2),
        sigma=jnp.array([[0.0], [X.parameters["sigma"]]]),
        T=T, vT=vT
    )

# Toggle switch of two mutually repressing genes

def cell_drift(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    def u(x, alpha):
        return x**4 / (alpha + x**4)

    return jnp.array([u(x[0], params["alpha"]) + 1.0 - u(x[1], params["alpha"]) - x[0],
                      u(x[1], params["alpha"]) + 1.0 - u(x[0], params["alpha"]) - x[1]],
                     dtype=DEFAULT_DTYPE)

def cell_process(params: Mapping[str, float], state_dim: int = 2) -> ProcessModel:
    return ProcessModel(2, 2, params, cell_drift, brownian_diffusion, const_diffusivity=True)

def cell_auxiliary(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                   L: Optional[xTYPE] = None) -> LinearAuxiliaryProcess:
    return LinearAuxiliaryProcess(
        B=-1.0 * jnp.eye(2),
        beta=jnp.ones(2),
        sigma=X.parameters["sigma"] * jnp.eye(2),
        T=T, vT=vT
    )

# FitzHugh-Nagumo neuron, hypoelliptic: only the recovery variable is driven by noise

def fhn_drift(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    term1 = jnp.array([[1. / params["chi"], -1. / params["chi"]],
                       [params["gamma"],     -1.]],
                      dtype=DEFAULT_DTYPE)     # (2, 2)
    term2 = jnp.array([(- x[0]**3 + params["s"]) / params["chi"], params["alpha"]], dtype=DEFAULT_DTYPE)     # (2,)
    return jnp.einsum("i j, j -> i", term1, x) + term2

def fhn_diffusion(t: tTYPE, x: xTYPE, params: FrozenDict) -> xTYPE:
    return jnp.array([0., params["sigma"]], dtype=DEFAULT_DTYPE).reshape(2, 1)

def fhn_process(params: Mapping[str, float], state_dim: int = 2) -> ProcessModel:
    return ProcessModel(2, 1, params, fhn_drift, fhn_diffusion, const_diffusivity=True)

def _observed_first_coordinate(vT: Optional[xTYPE], L: Optional[xTYPE]) -> float:
    """ Value of x[0] read off an observation that measures it alone, 0 when there is none. """
    if vT is None:
        return 0.0
    vT = np.ravel(np.asarray(vT, dtype=np.float64))
    if L is None:
        return float(vT[0])
    L = np.atleast_2d(np.asarray(L, dtype=np.float64))
    for row, v in zip(L, vT):
        if row[0] != 0.0 and not np.any(row[1:]):
            return float(v / row[0])
    return 0.0

def fhn_auxiliary(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                  L: Optional[xTYPE] = None) -> LinearAuxiliaryProcess:
    """ Cubic term linearised around the observed value of the first coordinate at the segment end. """
    p = X.parameters
    v = _observed_first_coordinate(vT, L)
    return LinearAuxiliaryProcess(
        B=jnp.array([[(1. - 3. * v**2) / p["chi"], -1. / p["chi"]],
                     [p["gamma"],                  -1.]]),
        beta=jnp.array([(2. * v**3 + p["s"]) / p["chi"], p["alpha"]]),
        sigma=jnp.array([[0.], [p["sigma"]]]),
        T=T, vT=vT
    )

class DiffusionCatalog:
    """ Named process models with matching auxiliary factories.

    The catalog is a plain object owned by its user; ``default_catalog`` returns a
    fresh one, so registering a model never affects other catalogs.
    """

    def __init__(self):
        self._entries: Dict[str, CatalogEntry] = {}

    def register(self,
                 name: str,
                 build_process: Callable[..., ProcessModel],
                 build_auxiliary: AuxFactory,
                 default_params: Mapping[str, float]) -> None:
        key = name.lower()
        if key in self._entries:
            raise ValueError(f"Model {name} already registered")
        self._entries[key] = CatalogEntry(build_process, build_auxiliary, FrozenDict(default_params))

    @property
    def names(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._entries

    def __getitem__(self, name: str) -> CatalogEntry:
        try:
            return self._entries[name.lower()]
        except KeyError:
            raise ValueError(f"Model {name} not supported") from None

    def build(self,
              name: str,
              params: Optional[Mapping[str, float]] = None,
              state_dim: Optional[int] = None) -> Tuple[ProcessModel, AuxFactory]:
        """ Instantiate a model; ``params`` override the defaults, unknown names raise KeyError. """
        entry = self[name]
        params = dict(params or {})
        unknown = set(params) - set(entry.default_params)
        if unknown:
            raise KeyError(f"Unknown parameters for {name}: {sorted(unknown)}")
        kwargs = {} if state_dim is None else {"state_dim": state_dim}
        X = entry.build_process({**entry.default_params, **params}, **kwargs)
        return X, entry.build_auxiliary

def default_catalog() -> DiffusionCatalog:
    catalog = DiffusionCatalog()
    catalog.register("brownian", brownian_process, brownian_auxiliary, {"gamma": 0.0, "sigma": 1.0})
    catalog.register("ou", ou_process, ou_auxiliary, {"gamma": 1.0, "mu": 0.0, "sigma": 1.0})
    catalog.register("pendulum", pendulum_process, pendulum_auxiliary, {"omega2": 4.0, "sigma": 0.5})
    catalog.register("cell", cell_process, cell_auxiliary, {"alpha": 1. / 16., "sigma": 0.1})
    catalog.register("fhn", fhn_process, fhn_auxiliary,
                     {"chi": 0.1, "s": 0.0, "gamma": 1.5, "alpha": 0.8, "sigma": 0.3})
    return catalog
