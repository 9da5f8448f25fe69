""" Backward filtering for guided proposals.

The guiding function of a segment is kept in information form,

    log h(t, x) = c(t) + F(t)^T x - x^T H(t) x / 2,

and is propagated backwards in time under the auxiliary linear process
dX = (B(t) X + beta(t)) dt + sigma(t) dW with a(t) = sigma(t) sigma(t)^T:

    dH/dt = -B^T H - H B + H a H
    dF/dt = -B^T F + H a F + H beta
    dc/dt = -beta^T F - F^T a F / 2 + tr(H a) / 2

(Mider, Schauer & van der Meulen, Continuous-discrete smoothing of diffusions,
Electron. J. Statist. 2021). At an observation v ~ N(L x, Sigma) the three terms
receive the Gaussian log likelihood of v, see ``observation_update``.
"""
from guidedbridge.setups import *
from guidedbridge.errors import (
    DimensionMismatchError, GuidingTermDivergenceError, SingularDiffusivityError
)
from guidedbridge.utils.t_grid import check_grid
from guidedbridge.stochastic_processes.unconds import AuxiliaryProcess

SolveState = namedtuple("SolveState", ["H", "F", "c"])
GuidingTerm = namedtuple("GuidingTerm", ["ts", "Hs", "Fs", "cs"])

def terminal_state(dim: int, dtype: jnp.dtype = DEFAULT_DTYPE) -> SolveState:
    """ Guiding information after the last observation: h = 1. """
    return SolveState(
        H=jnp.zeros((dim, dim), dtype=dtype),
        F=jnp.zeros((dim, ), dtype=dtype),
        c=jnp.zeros((), dtype=dtype)
    )

def observation_update(state: SolveState, L: jnp.ndarray, v: jnp.ndarray, Sigma: jnp.ndarray) -> SolveState:
    """ Multiply the guiding function by the likelihood of the observation v ~ N(L x, Sigma).

    Raises:
        DimensionMismatchError: L does not match the state dimension.
        GuidingTermDivergenceError: Sigma is not positive definite.
    """
    dim = state.F.shape[0]
    if L.ndim != 2 or L.shape[1] != dim:
        raise DimensionMismatchError(f"Observation operator has shape {L.shape}, expected (m, {dim})")
    chol = jnp.linalg.cholesky(Sigma)
    if not bool(jnp.all(jnp.isfinite(chol))):
        raise GuidingTermDivergenceError(
            "Observation noise covariance must be positive definite to seed the guiding term"
        )
    inv_Sigma_L = jsp.linalg.cho_solve((chol, True), L)
    inv_Sigma_v = jsp.linalg.cho_solve((chol, True), v)
    log_norm = jsp.stats.multivariate_normal.logpdf(v, jnp.zeros_like(v), Sigma)
    return SolveState(
        H=state.H + jnp.einsum("j i, j k -> i k", L, inv_Sigma_L),
        F=state.F + jnp.einsum("j i, j -> i", L, inv_Sigma_v),
        c=state.c + log_norm
    )

class BackwardODE:
    """ Solves for the guiding term of one segment on a given time grid.

    ``kernel`` selects the stepping rule:
        "exact":  exact linear-Gaussian step, only for time homogeneous auxiliary processes;
        "r3":     Ralston's third order Runge-Kutta step on the ODEs above;
        "dopri5": fixed-step Dormand-Prince fifth order Runge-Kutta step;
        "auto":   "exact" when the auxiliary process allows it, otherwise "dopri5".
    """
    X_aux: AuxiliaryProcess
    kernel_name: str
    psd_atol: float

    def __init__(
        self,
        X_aux: AuxiliaryProcess,
        kernel: str = "auto",
        psd_atol: float = 1e-8
    ):
        self.X_aux = X_aux
        self.dim = X_aux.dim
        self.B = X_aux.B
        self.beta = X_aux.beta
        self.a = X_aux.a
        self.psd_atol = psd_atol

        if kernel == "auto":
            kernel = "exact" if X_aux.time_homogeneous else "dopri5"
        if kernel == "exact" and not X_aux.time_homogeneous:
            raise ValueError("Kernel exact needs a time homogeneous auxiliary process")
        self.kernel_name = kernel
        self.kernel = self._get_kernel(kernel)

    def _get_kernel(self, kernel: str):
        if kernel == "exact":
            return None
        elif kernel == "dopri5":
            return kernel_dopri5
        elif kernel == "r3":
            return kernel_r3
        else:
            raise ValueError(f"Kernel {kernel} not supported")

    def _pack(self, state: SolveState) -> jnp.ndarray:
        return jnp.concatenate([state.H.reshape(-1), state.F, state.c.reshape(1)])

    def _unpack(self, y: jnp.ndarray) -> SolveState:
        d = self.dim
        return SolveState(H=y[:d * d].reshape(d, d), F=y[d * d:d * d + d], c=y[-1])

    def _vector_field(self, t: tTYPE, y: jnp.ndarray) -> jnp.ndarray:
        H, F, _ = self._unpack(y)
        B, beta, a = self.B(t), self.beta(t), self.a(t)
        dH = -B.T @ H - H @ B + H @ a @ H
        dF = -B.T @ F + H @ a @ F + H @ beta
        dc = -jnp.dot(beta, F) - 0.5 * jnp.einsum("i, i j, j -> ", F, a, F) + 0.5 * jnp.trace(H @ a)
        return self._pack(SolveState(H=dH, F=dF, c=dc))

    def transition(self, dt: tTYPE) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
        """ Exact moments of the auxiliary process over a step of length dt:
        X_{t+dt} = Phi X_t + mu + N(0, Q) (Van Loan's block matrix exponentials). """
        d = self.dim
        B, beta, a = self.B(0.0), self.beta(0.0), self.a(0.0)
        zeros = jnp.zeros((d, d), dtype=B.dtype)
        van_loan = jsp.linalg.expm(jnp.block([[-B, a], [zeros, B.T]]) * dt)
        Phi = van_loan[d:, d:].T
        Q = Phi @ van_loan[:d, d:]
        Q = 0.5 * (Q + Q.T)
        augmented = jnp.zeros((d + 1, d + 1), dtype=B.dtype).at[:d, :d].set(B).at[:d, d].set(beta)
        mu = jsp.linalg.expm(augmented * dt)[:d, d]
        return Phi, mu, Q

    def _exact_step(self, state: SolveState, dt: tTYPE) -> Tuple[SolveState, jnp.ndarray]:
        Phi, mu, Q = self.transition(dt)
        K_inv = jnp.eye(self.dim, dtype=Q.dtype) + state.H @ Q
        sign, logdet = jnp.linalg.slogdet(K_inv)
        H_ = jnp.linalg.solve(K_inv, state.H)
        F_ = jnp.linalg.solve(K_inv, state.F)
        c_ = state.c + 0.5 * jnp.dot(state.F, Q @ F_) - 0.5 * logdet
        H = Phi.T @ H_ @ Phi
        H = 0.5 * (H + H.T)
        F = Phi.T @ (F_ - H_ @ mu)
        c = c_ + jnp.dot(F_, mu) - 0.5 * jnp.einsum("i, i j, j -> ", mu, H_, mu)
        return SolveState(H=H, F=F, c=c), sign

    @partial(jax.jit, static_argnums=(0,))
    def _solve_exact(self, ts: jnp.ndarray, init_state: SolveState):
        def scan_fn(solve_state: SolveState, dt: tTYPE) -> tuple:
            new_state, sign = self._exact_step(solve_state, dt)
            return new_state, (new_state, sign)

        _, (states, signs) = jax.lax.scan(
            f=scan_fn,
            init=init_state,
            xs=jnp.diff(ts),
            reverse=True
        )
        return states, signs

    @partial(jax.jit, static_argnums=(0,))
    def _solve_kernel(self, ts: jnp.ndarray, init_state: SolveState):
        def scan_fn(y: jnp.ndarray, t_args: tuple) -> tuple:
            t, dt = t_args
            y_new = self.kernel(func=self._vector_field, t=t, y=y, dt=-dt)
            return y_new, y_new

        _, ys = jax.lax.scan(
            f=scan_fn,
            init=self._pack(init_state),
            xs=(ts[1:], jnp.diff(ts)),
            reverse=True
        )
        states = jax.vmap(self._unpack)(ys)
        return states._replace(H=0.5 * (states.H + jnp.swapaxes(states.H, -1, -2)))

    def solve(self, ts: Sequence[tTYPE], init_state: SolveState) -> GuidingTerm:
        """ Propagate the guiding information given at ts[-1] back to every point of ts.

        Raises:
            InvalidGridError: ts is not a valid time grid.
            SingularDiffusivityError: the auxiliary diffusion is not finite on the grid or
                the exact step meets a singular update matrix.
            GuidingTermDivergenceError: some H(t) is non-finite or not positive semi-definite,
                or some F(t), c(t) is non-finite.
        """
        ts = check_grid(ts)
        if init_state.H.shape != (self.dim, self.dim):
            raise DimensionMismatchError(f"Terminal H has shape {init_state.H.shape}, expected {(self.dim, self.dim)}")

        a_values = jax.vmap(self.a)(ts) if not self.X_aux.time_homogeneous else self.a(ts[-1])
        if not bool(jnp.all(jnp.isfinite(a_values))):
            raise SingularDiffusivityError(f"{self.X_aux.__class__.__name__} diffusion is not finite on the time grid")

        if self.kernel_name == "exact":
            states, signs = self._solve_exact(ts, init_state)
            singular = np.asarray(signs <= 0)
            if singular.any():
                idx = _last_index(singular)
                raise SingularDiffusivityError(
                    f"Singular guiding update at t={float(ts[idx]):.6g}: I + H Q is not invertible"
                )
        else:
            states = self._solve_kernel(ts, init_state)

        Hs = jnp.concatenate([states.H, init_state.H[jnp.newaxis]], axis=0)
        Fs = jnp.concatenate([states.F, init_state.F[jnp.newaxis]], axis=0)
        cs = jnp.concatenate([states.c, jnp.reshape(init_state.c, (1, ))], axis=0)
        self._check_guiding_term(ts, Hs, Fs, cs)
        return GuidingTerm(ts=ts, Hs=Hs, Fs=Fs, cs=cs)

    def _check_guiding_term(self, ts: jnp.ndarray, Hs: jnp.ndarray, Fs: jnp.ndarray, cs: jnp.ndarray) -> None:
        finite = jnp.all(jnp.isfinite(Hs), axis=(1, 2)) & jnp.all(jnp.isfinite(Fs), axis=1) & jnp.isfinite(cs)
        if not bool(jnp.all(finite)):
            idx = _last_index(~np.asarray(finite))
            raise GuidingTermDivergenceError(f"Guiding term became non-finite at t={float(ts[idx]):.6g}")
        eigvals = jnp.linalg.eigvalsh(Hs)
        scale = jnp.maximum(1.0, jnp.max(jnp.abs(eigvals), axis=1))
        psd = eigvals[:, 0] >= -self.psd_atol * scale
        if not bool(jnp.all(psd)):
            idx = _last_index(~np.asarray(psd))
            raise GuidingTermDivergenceError(
                f"H is not positive semi-definite at t={float(ts[idx]):.6g} "
                f"(smallest eigenvalue {float(eigvals[idx, 0]):.3g}); "
                f"check the auxiliary process or refine the time grid"
            )


def kernel_r3(
    func: callable, t: float, y: jnp.ndarray, dt: float, **kwargs
) -> jnp.ndarray:
    k1 = func(t, y, **kwargs)
    k2 = func(t + 0.5 * dt, y + 0.5 * dt * k1, **kwargs)
    k3 = func(t + 0.75 * dt, y + 3 * dt / 4 * k2, **kwargs)
    out = y + dt * (2 / 9 * k1 + 1 / 3 * k2 + 4 / 9 * k3)
    return out

def kernel_dopri5(
    func: callable, t: float, y: jnp.ndarray, dt: float, **kwargs
) -> jnp.ndarray:
    k1 = func(t, y, **kwargs)
    k2 = func(t + 1/5 * dt, y + 1/5 * dt * k1, **kwargs)
    k3 = func(t + 3/10 * dt, y + 3/40 * dt * k1 + 9/40 * dt * k2, **kwargs)
    k4 = func(t + 4/5 * dt, y + 44/45 * dt * k1 - 56/15 * dt * k2 + 32/9 * dt * k3, **kwargs)
    k5 = func(t + 8/9 * dt, y + 19372/6561 * dt * k1 - 25360/2187 * dt * k2 + 64448/6561 * dt * k3 - 212/729 * dt * k4, **kwargs)
    k6 = func(t + dt, y + 9017/3168 * dt * k1 - 355/33 * dt * k2 + 46732/5247 * dt * k3 + 49/176 * dt * k4 - 5103/18656 * dt * k5, **kwargs)

    out = y + dt * (35/384 * k1 + 500/1113 * k3 + 125/192 * k4 - 2187/6784 * k5 + 11/84 * k6)
    return out

def _last_index(mask: np.ndarray) -> int:
    # the backward pass meets the latest failing grid point first
    return int(np.nonzero(mask)[0][-1])
