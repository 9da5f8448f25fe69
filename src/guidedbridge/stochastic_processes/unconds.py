from guidedbridge.setups import *
from guidedbridge.errors import DimensionMismatchError

class ContinuousTimeProcess(abc.ABC):
    """ Diffusion dX_t = f(t, X_t) dt + g(t, X_t) dW_t with X_t in R^dim and W_t in R^noise_dim. """
    dim: int
    noise_dim: int
    dtype: Optional[jnp.dtype] = DEFAULT_DTYPE
    const_diffusivity: bool = False
    is_linear: bool = False

    def __init__(self, dim: int, noise_dim: Optional[int] = None):
        self.dim = dim
        self.noise_dim = noise_dim if noise_dim is not None else dim

    @property
    def state_dim(self) -> int:
        return self.dim

    @abc.abstractmethod
    def f(self, t: tTYPE, x: xTYPE) -> xTYPE:
        pass

    @abc.abstractmethod
    def g(self, t: tTYPE, x: xTYPE) -> xTYPE:
        pass

    def Sigma(self, t: tTYPE, x: xTYPE) -> xTYPE:
        g = self.g(t, x)
        return jnp.einsum('i j, k j -> i k', g, g)

    def check_dims(self, t: tTYPE, x: xTYPE) -> None:
        """ Check shapes of x, f(t, x) and g(t, x) without evaluating the coefficients.

        Raises:
            DimensionMismatchError: any of the shapes disagrees with (dim, noise_dim).
        """
        x = jnp.asarray(x, dtype=self.dtype)
        if x.shape != (self.dim, ):
            raise DimensionMismatchError(f"State has shape {x.shape}, expected ({self.dim},)")
        drift = jax.eval_shape(self.f, t, x)
        if drift.shape != (self.dim, ):
            raise DimensionMismatchError(
                f"{self.__class__.__name__} drift has shape {drift.shape}, expected ({self.dim},)"
            )
        diffusion = jax.eval_shape(self.g, t, x)
        if diffusion.shape != (self.dim, self.noise_dim):
            raise DimensionMismatchError(
                f"{self.__class__.__name__} diffusion has shape {diffusion.shape}, "
                f"expected ({self.dim}, {self.noise_dim})"
            )

class ProcessModel(ContinuousTimeProcess):
    """ Diffusion assembled from plain drift and diffusion functions.

    The functions are called as ``drift_fn(t, x, parameters)`` and
    ``diffusion_fn(t, x, parameters)`` and must return arrays of shape
    (state_dim,) and (state_dim, noise_dim). ``parameters`` is an immutable,
    ordered mapping from names to floats.

    Args:
        state_dim (int): dimension of the state.
        noise_dim (int): dimension of the driving Wiener process.
        parameters (Mapping[str, float], optional): named scalar parameters.
        drift_fn (Callable): drift function.
        diffusion_fn (Callable): diffusion coefficient function.
        const_diffusivity (bool): the diffusion coefficient depends on neither t nor x.
        is_linear (bool): the drift is affine in x.
    """
    parameters: FrozenDict

    def __init__(self,
                 state_dim: int,
                 noise_dim: int,
                 parameters: Optional[Mapping[str, float]] = None,
                 drift_fn: Optional[Callable[[tTYPE, xTYPE, FrozenDict], xTYPE]] = None,
                 diffusion_fn: Optional[Callable[[tTYPE, xTYPE, FrozenDict], xTYPE]] = None,
                 const_diffusivity: bool = False,
                 is_linear: bool = False):
        for name, value in (("state_dim", state_dim), ("noise_dim", noise_dim)):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise DimensionMismatchError(f"{name} must be a positive integer, got {value!r}")
        if not callable(drift_fn):
            raise TypeError("drift_fn must be callable")
        if not callable(diffusion_fn):
            raise TypeError("diffusion_fn must be callable")
        super().__init__(int(state_dim), int(noise_dim))

        self.parameters = FrozenDict(self._as_scalars(parameters or {}))
        self.drift_fn = drift_fn
        self.diffusion_fn = diffusion_fn
        self.const_diffusivity = bool(const_diffusivity)
        self.is_linear = bool(is_linear)

    @staticmethod
    def _as_scalars(parameters: Mapping[str, float]) -> Dict[str, float]:
        scalars = {}
        for name, value in parameters.items():
            if np.ndim(value) != 0:
                raise ValueError(f"Parameter {name} must be a scalar, got shape {np.shape(value)}")
            scalars[str(name)] = float(value)
        return scalars

    def f(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return jnp.asarray(self.drift_fn(t, x, self.parameters), dtype=self.dtype)

    def g(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return jnp.asarray(self.diffusion_fn(t, x, self.parameters), dtype=self.dtype)

    def with_parameters(self, **updates: float) -> "ProcessModel":
        """ Copy of the model with some parameters replaced; unknown names are rejected. """
        unknown = set(updates) - set(self.parameters)
        if unknown:
            raise KeyError(f"Unknown parameters: {sorted(unknown)}")
        return ProcessModel(
            state_dim=self.dim,
            noise_dim=self.noise_dim,
            parameters={**self.parameters, **updates},
            drift_fn=self.drift_fn,
            diffusion_fn=self.diffusion_fn,
            const_diffusivity=self.const_diffusivity,
            is_linear=self.is_linear,
        )

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v:g}" for k, v in self.parameters.items())
        return f"ProcessModel(state_dim={self.dim}, noise_dim={self.noise_dim}, parameters=({params}))"

class AuxiliaryProcess(ContinuousTimeProcess):
    """ Linear diffusion dX_t = (B(t) X_t + beta(t)) dt + g(t) dW_t used over one observation
    segment ending at time T with target value vT. """
    dim: int
    dtype: Optional[jnp.dtype] = DEFAULT_DTYPE
    is_linear: bool = True
    time_homogeneous: bool = False
    T: float
    vT: Optional[xTYPE]

    def __init__(self, dim: int, noise_dim: Optional[int] = None, T: float = 1.0, vT: Optional[xTYPE] = None):
        super().__init__(dim, noise_dim)
        self.T = T
        self.vT = vT

    @abc.abstractmethod
    def beta(self, t: tTYPE) -> xTYPE:
        pass

    @abc.abstractmethod
    def B(self, t: tTYPE) -> xTYPE:
        pass

    def f(self, t: tTYPE, x: xTYPE) -> xTYPE:
        drift = self.beta(t) + jnp.einsum('i j, j -> i', self.B(t), x)
        return drift

    @abc.abstractmethod
    def g(self, t: tTYPE, x: xTYPE) -> xTYPE:
        pass

    def a(self, t: tTYPE) -> xTYPE:
        return self.Sigma(t, None)

class LinearAuxiliaryProcess(AuxiliaryProcess):
    """ Auxiliary process from constant arrays or functions of t.

    Each of ``B`` (dim x dim), ``beta`` (dim,) and ``sigma`` (dim x noise_dim) is
    either an array or a callable of t. With three constant coefficients the
    process is time homogeneous and the backward filter can use exact transition
    moments instead of numerical integration.
    """

    def __init__(self,
                 B: Union[xTYPE, Callable[[tTYPE], xTYPE]],
                 beta: Union[xTYPE, Callable[[tTYPE], xTYPE]],
                 sigma: Union[xTYPE, Callable[[tTYPE], xTYPE]],
                 T: float = 1.0,
                 vT: Optional[xTYPE] = None):
        self.time_homogeneous = not any(callable(coeff) for coeff in (B, beta, sigma))
        self._B, self._beta, self._sigma = (
            coeff if callable(coeff) else jnp.asarray(coeff, dtype=self.dtype)
            for coeff in (B, beta, sigma)
        )
        B_T, beta_T, sigma_T = self.B(T), self.beta(T), self.g(T, None)
        if B_T.ndim != 2 or B_T.shape[0] != B_T.shape[1]:
            raise DimensionMismatchError(f"B must be a square matrix, got shape {B_T.shape}")
        dim = B_T.shape[0]
        if beta_T.shape != (dim, ):
            raise DimensionMismatchError(f"beta has shape {beta_T.shape}, expected ({dim},)")
        if sigma_T.ndim != 2 or sigma_T.shape[0] != dim:
            raise DimensionMismatchError(f"sigma has shape {sigma_T.shape}, expected ({dim}, noise_dim)")
        super().__init__(dim, sigma_T.shape[1], T=T, vT=None if vT is None else jnp.asarray(vT, dtype=self.dtype))

    def B(self, t: tTYPE) -> xTYPE:
        return jnp.asarray(self._B(t), dtype=self.dtype) if callable(self._B) else self._B

    def beta(self, t: tTYPE) -> xTYPE:
        return jnp.asarray(self._beta(t), dtype=self.dtype) if callable(self._beta) else self._beta

    def g(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return jnp.asarray(self._sigma(t), dtype=self.dtype) if callable(self._sigma) else self._sigma

# aux_factory(X, t0, T, vT, L=None), vT and L from the observation closing the segment
AuxFactory = Callable[..., AuxiliaryProcess]

def linearized_auxiliary(x_ref: xTYPE, t_ref: Optional[float] = None) -> AuxFactory:
    """ Auxiliary factory linearising the model drift around a fixed point.

    B = df/dx(t_ref, x_ref), beta = f(t_ref, x_ref) - B x_ref and sigma = g(t_ref, x_ref).
    When t_ref is None the segment end time is used. For a linear model with constant
    diffusivity the auxiliary process coincides with the model.
    """
    x_ref = jnp.asarray(x_ref, dtype=DEFAULT_DTYPE)

    def aux_factory(X: ContinuousTimeProcess, t0: float, T: float, vT: xTYPE,
                    L: Optional[xTYPE] = None) -> AuxiliaryProcess:
        t_lin = T if t_ref is None else t_ref
        B = jax.jacfwd(X.f, argnums=1)(t_lin, x_ref)
        beta = X.f(t_lin, x_ref) - jnp.einsum("i j, j -> i", B, x_ref)
        return LinearAuxiliaryProcess(B=B, beta=beta, sigma=X.g(t_lin, x_ref), T=T, vT=vT)

    return aux_factory
