from guidedbridge.setups import *
from guidedbridge.errors import DimensionMismatchError
from guidedbridge.stochastic_processes.unconds import (
    ContinuousTimeProcess, AuxiliaryProcess
)
from guidedbridge.solvers.ode import GuidingTerm

class GuidedBridgeProcess(ContinuousTimeProcess):
    """ Guided proposal on one observation segment.

    The drift of the unconditioned process is corrected by a(t, x) r(t, x), where
    r(t, x) = F(t) - H(t) x is the gradient of the log guiding function
    log h(t, x) = c(t) + F(t)^T x - x^T H(t) x / 2 computed by the backward filter.
    The guiding term is only available on its own time grid, so f, r and G must be
    evaluated at grid times.
    """
    X_unc: ContinuousTimeProcess    # unconditioned process
    X_aux: AuxiliaryProcess         # auxiliary process
    ts: jnp.ndarray                 # time grid of the guiding term
    Hs: jnp.ndarray
    Fs: jnp.ndarray
    cs: jnp.ndarray

    def __init__(self,
                 X_unc: ContinuousTimeProcess,
                 X_aux: AuxiliaryProcess,
                 guiding: GuidingTerm):
        super().__init__(X_unc.dim, X_unc.noise_dim)
        if X_aux.dim != X_unc.dim:
            raise DimensionMismatchError(
                f"Auxiliary process has dimension {X_aux.dim}, unconditioned process has {X_unc.dim}"
            )
        if guiding.Hs.shape[1:] != (X_unc.dim, X_unc.dim):
            raise DimensionMismatchError(f"Guiding term H has shape {guiding.Hs.shape[1:]}, expected {(X_unc.dim, X_unc.dim)}")

        self.X_unc = X_unc
        self.X_aux = X_aux
        self.const_diffusivity = X_unc.const_diffusivity

        self.ts = guiding.ts
        self.Hs, self.Fs, self.cs = guiding.Hs, guiding.Fs, guiding.cs
        self.match_diffusivity = self._diffusivities_match()
        self.match_drift = self._drifts_match()

    def _drifts_match(self) -> bool:
        # G is only evaluated at grid times; an affine drift equal to the auxiliary
        # drift there leaves G identically zero
        if not (self.match_diffusivity and self.X_unc.is_linear):
            return False
        x0 = jnp.zeros(self.dim, dtype=self.dtype)
        Bs = jax.vmap(lambda t: jax.jacfwd(self.X_unc.f, argnums=1)(t, x0))(self.ts)
        betas = jax.vmap(lambda t: self.X_unc.f(t, x0))(self.ts)
        Bs_aux = jax.vmap(self.X_aux.B)(self.ts)
        betas_aux = jax.vmap(self.X_aux.beta)(self.ts)
        return bool(
            jnp.allclose(Bs, Bs_aux, rtol=1e-12, atol=1e-12)
            and jnp.allclose(betas, betas_aux, rtol=1e-12, atol=1e-12)
        )

    def _diffusivities_match(self) -> bool:
        if not (self.X_unc.const_diffusivity and self.X_aux.time_homogeneous):
            return False
        t = self.ts[0]
        A = self.X_unc.Sigma(t, jnp.zeros(self.dim, dtype=self.dtype)) - self.X_aux.a(t)
        return bool(jnp.allclose(A, 0.0))

    def _find_t_idx(self, t: tTYPE) -> int:
        t = t.squeeze() if jnp.ndim(t) > 0 else t
        return jnp.searchsorted(self.ts, t, side="left")

    @partial(jax.jit, static_argnums=(0,))
    def r(self, t: tTYPE, x: xTYPE) -> xTYPE:
        t_idx = self._find_t_idx(t)
        F, H = self.Fs[t_idx], self.Hs[t_idx]
        return F - jnp.einsum("i j, j -> i", H, x)

    def f(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return self.X_unc.f(t, x) + jnp.einsum("i j, j -> i", self.Sigma(t, x), self.r(t, x))

    def g(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return self.X_unc.g(t, x)

    def Sigma(self, t: tTYPE, x: xTYPE) -> xTYPE:
        return self.X_unc.Sigma(t, x)

    def G(self, t: tTYPE, x: xTYPE) -> jnp.ndarray:
        """ Integrand of the log likelihood ratio between the true bridge and the guided proposal. """
        if self.match_drift:
            return jnp.zeros((), dtype=self.dtype)
        r = self.r(t, x)
        term1 = jnp.einsum("i, i -> ", self.X_unc.f(t, x) - self.X_aux.f(t, x), r)
        if self.match_diffusivity:
            return term1
        A = self.X_unc.Sigma(t, x) - self.X_aux.a(t)
        term2 = -0.5 * jnp.trace(A @ (self.Hs[self._find_t_idx(t)] - jnp.einsum("i, j -> i j", r, r)))
        return term1 + term2
