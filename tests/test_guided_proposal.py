import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax.scipy.stats import norm

from guidedbridge.errors import NumericalInstabilityError, DimensionMismatchError
from guidedbridge.observations import (
    Observation, GaussianStartingPoint, KnownStartingPoint, Recording
)
from guidedbridge.stochastic_processes.conds import GuidedBridgeProcess
from guidedbridge.stochastic_processes.unconds import LinearAuxiliaryProcess
from guidedbridge.stochastic_processes.examples import default_catalog
from guidedbridge.solvers.sde import WienerProcess
from guidedbridge.configs.guided_proposal_config import get_pendulum_config, get_ou_config
from guidedbridge.models.guided_proposal import (
    BridgeResult, GuidedProposal, backward_filter, forward_guide, forward_guide_segment
)

def _pendulum_proposal(ts=(1.0, ), vs=(0.95, ), dt=0.01, **kwargs):
    X, aux_factory = default_catalog().build("pendulum")
    observations = [Observation(t=t, v=[v], L=[[1.0, 0.0]], Sigma=[[1e-4]]) for t, v in zip(ts, vs)]
    recording = Recording(X, observations, 0.0, GaussianStartingPoint(jnp.zeros(2), 5.0))
    return GuidedProposal(recording, aux_factory, dt=dt, **kwargs)

def test_pendulum_bridge_success_rate():
    proposal = _pendulum_proposal()
    assert len(proposal.segments) == 1
    rng_key = jax.random.PRNGKey(0)
    n_trials, n_success, ends = 1000, 0, []
    for _ in range(n_trials):
        rng_key, sub_key = jax.random.split(rng_key)
        result = proposal.simulate(sub_key)
        if result.success:
            n_success += 1
            assert np.isfinite(result.log_likelihood_ratio)
            ends.append(float(result.paths[0].xs[0, -1, 0]))
    assert n_success / n_trials > 0.95
    # the bridges end close to the observed angle
    assert abs(np.median(ends) - 0.95) < 0.05

def test_pendulum_bridge_result():
    proposal = _pendulum_proposal()
    result = proposal.simulate(jax.random.PRNGKey(1), x0=jnp.array([0.0, 0.0]))
    assert isinstance(result, BridgeResult)
    assert result.success
    path = result.trajectory
    assert path.xs.shape == (1, 101, 2)
    assert path.ts[0] == 0.0 and path.ts[-1] == 1.0
    assert jnp.array_equal(path.xs[0, 0], jnp.zeros(2))
    assert result.raise_for_failure() is result
    assert np.isfinite(proposal.log_likelihood(result))

def test_forward_guide_is_deterministic():
    proposal = _pendulum_proposal(ts=(0.5, 1.0), vs=(0.5, 0.95))
    first = proposal.simulate(jax.random.PRNGKey(3))
    second = proposal.simulate(jax.random.PRNGKey(3))
    assert first.log_likelihood_ratio == second.log_likelihood_ratio
    for p, q in zip(first.paths, second.paths):
        assert jnp.array_equal(p.xs, q.xs)

def test_single_and_multi_segment_agree():
    proposal = _pendulum_proposal()
    segment = proposal.segments[0]
    X, x0 = proposal.X, jnp.array([0.3, -0.2])

    dWs = WienerProcess(1).sample(jax.random.PRNGKey(4), segment.tGrid.dts)
    single = forward_guide_segment(segment, X, x0, dWs=dWs)
    multi = forward_guide(proposal.segments, X, x0, dWs=[dWs])
    assert single.success == multi.success
    assert single.log_likelihood_ratio == multi.log_likelihood_ratio
    assert jnp.array_equal(single.paths[0].xs, multi.paths[0].xs)

    rng_key = jax.random.PRNGKey(5)
    single = forward_guide_segment(segment, X, x0, rng_key=jax.random.split(rng_key, 1)[0])
    multi = forward_guide(proposal.segments, X, x0, rng_key=rng_key)
    assert jnp.array_equal(single.paths[0].xs, multi.paths[0].xs)

    with pytest.raises(DimensionMismatchError):
        forward_guide(proposal.segments, X, x0, dWs=[dWs, dWs])

def test_multi_segment_trajectory():
    proposal = _pendulum_proposal(ts=(0.5, 1.0, 1.5), vs=(0.6, 0.95, 0.4))
    assert [s.t0 for s in proposal.segments] == [0.0, 0.5, 1.0]
    assert [s.T for s in proposal.segments] == [0.5, 1.0, 1.5]
    result = proposal.simulate(jax.random.PRNGKey(6), x0=jnp.array([0.5, 0.0]))
    assert result.success
    assert len(result.paths) == 3
    # every segment starts where the previous one ended
    for prev, nxt in zip(result.paths[:-1], result.paths[1:]):
        assert jnp.array_equal(prev.xs[0, -1], nxt.xs[0, 0])
    path = result.trajectory
    assert path.xs.shape == (1, 151, 2)
    assert jnp.all(jnp.diff(path.ts) > 0.0)
    total = sum(float(p.log_likelihood_ratio[0]) for p in result.paths)
    assert np.isclose(result.log_likelihood_ratio, total)

def test_failure_stops_the_run():
    proposal = _pendulum_proposal(ts=(0.5, 1.0), vs=(0.5, 0.95), log_weight_bound=1e-12)
    result = proposal.simulate(jax.random.PRNGKey(7), x0=jnp.array([0.3, 0.0]))
    assert not result.success
    assert len(result.paths) == 1
    assert proposal.log_likelihood(result) == -np.inf
    with pytest.raises(NumericalInstabilityError):
        result.raise_for_failure()

def test_non_finite_state_is_reported():
    proposal = _pendulum_proposal()
    result = proposal.simulate(jax.random.PRNGKey(8), x0=jnp.array([jnp.nan, 0.0]))
    assert not result.success

def test_brownian_likelihood_is_exact():
    gamma, sigma, v, obs_var, T = 0.3, 0.7, 0.5, 0.1, 1.0
    X, aux_factory = default_catalog().build("brownian", {"gamma": gamma, "sigma": sigma})
    obs = Observation(t=T, v=[v], L=[[1.0]], Sigma=[[obs_var]])
    proposal = GuidedProposal(Recording(X, [obs], 0.0, KnownStartingPoint([0.2])), aux_factory, dt=0.01)
    guided = proposal.segments[0].solver(X).X
    assert isinstance(guided, GuidedBridgeProcess)
    assert guided.match_diffusivity

    result = proposal.simulate(jax.random.PRNGKey(9))
    assert result.success
    assert result.log_likelihood_ratio == 0.0
    expected = norm.logpdf(v, 0.2 + gamma * T, np.sqrt(sigma**2 * T + obs_var))
    assert np.isclose(proposal.log_likelihood(result), expected, rtol=1e-8)

def test_guided_drift_and_weight_integrand():
    proposal = _pendulum_proposal()
    segment = proposal.segments[0]
    X_guided = segment.solver(proposal.X).X
    t, x = segment.tGrid.ts[10], jnp.array([0.4, 0.1])
    H, F = segment.guiding.Hs[10], segment.guiding.Fs[10]
    r = F - H @ x
    assert jnp.allclose(X_guided.r(t, x), r)
    assert jnp.allclose(X_guided.f(t, x), proposal.X.f(t, x) + proposal.X.Sigma(t, x) @ r)
    expected_G = jnp.dot(proposal.X.f(t, x) - segment.X_aux.f(t, x), r)
    assert jnp.allclose(X_guided.G(t, x), expected_G)

def test_observation_at_start_time_is_folded():
    X, aux_factory = default_catalog().build("pendulum")
    prior = GaussianStartingPoint(jnp.zeros(2), 5.0)
    obs0 = Observation(t=0.0, v=[0.9], L=[[1.0, 0.0]], Sigma=[[1e-2]])
    obs1 = Observation(t=1.0, v=[0.95], L=[[1.0, 0.0]], Sigma=[[1e-4]])
    with_start = GuidedProposal(Recording(X, [obs0, obs1], 0.0, prior), aux_factory)
    without_start = GuidedProposal(Recording(X, [obs1], 0.0, prior), aux_factory)
    assert len(with_start.segments) == 1
    assert jnp.allclose(with_start.start_state.H - without_start.start_state.H, jnp.array([[100.0, 0.0], [0.0, 0.0]]))
    assert jnp.allclose(with_start.start_state.F - without_start.start_state.F, jnp.array([90.0, 0.0]))
    x0 = jnp.array([0.9, 0.1])
    assert jnp.allclose(
        with_start.log_rho_tilde(x0) - without_start.log_rho_tilde(x0),
        obs0.log_likelihood(x0)
    )

def test_guided_start():
    proposal = _pendulum_proposal()
    x0 = proposal.sample_starting_point(jax.random.PRNGKey(10), guided_start=True)
    assert x0.shape == (2, )
    # the guided proposal concentrates the angle near the observation
    samples = jax.vmap(lambda k: proposal.sample_starting_point(k, guided_start=True))(
        jax.random.split(jax.random.PRNGKey(11), 2000)
    )
    prior_samples = jax.vmap(proposal.sample_starting_point)(jax.random.split(jax.random.PRNGKey(11), 2000))
    assert jnp.std(samples[:, 0]) < jnp.std(prior_samples[:, 0])

    result = proposal.simulate(jax.random.PRNGKey(12), guided_start=True)
    assert result.success
    ll = proposal.log_likelihood(result, guided_start=True)
    assert np.isfinite(ll)
    x0 = result.paths[0].xs[0, 0]
    correction = proposal.recording.x0_prior.logpdf(x0) - proposal.starting_point_proposal(True).logpdf(x0)
    assert np.isclose(ll - proposal.log_likelihood(result), correction)

def test_with_parameters():
    proposal = _pendulum_proposal()
    other = proposal.with_parameters(sigma=1.0)
    assert other.X.parameters["sigma"] == 1.0
    assert proposal.X.parameters["sigma"] == 0.5
    assert not jnp.allclose(other.segments[0].guiding.Hs[0], proposal.segments[0].guiding.Hs[0])

def test_backward_filter_seeds_segments_from_later_ones():
    proposal = _pendulum_proposal(ts=(0.5, 1.0), vs=(0.5, 0.95))
    first, second = proposal.segments
    obs = first.observation
    H_end = first.guiding.Hs[-1]
    expected = second.guiding.Hs[0] + obs.L.T @ jnp.linalg.solve(obs.Sigma, obs.L)
    assert jnp.allclose(H_end, expected)

    segments, start_state = backward_filter(
        proposal.X, proposal.recording, proposal.aux_factory, dt=0.01
    )
    assert jnp.array_equal(start_state.H, proposal.start_state.H)

def test_from_config():
    proposal = GuidedProposal.from_config(get_pendulum_config())
    assert len(proposal.segments) == 1
    assert proposal.segments[0].n_steps == 100

    proposal = GuidedProposal.from_config(get_ou_config())
    assert len(proposal.segments) == 4
    result = proposal.simulate(jax.random.PRNGKey(0))
    assert result.success
    # the auxiliary process equals the OU process, so the weight vanishes
    assert result.log_likelihood_ratio == 0.0

def test_log_rho_tilde_uses_start_of_first_segment():
    proposal = _pendulum_proposal(ts=(0.5, 1.0), vs=(0.5, 0.95))
    guiding = proposal.segments[0].guiding
    x0 = jnp.array([0.2, -0.1])
    expected = guiding.cs[0] + guiding.Fs[0] @ x0 - 0.5 * x0 @ guiding.Hs[0] @ x0
    assert jnp.allclose(proposal.log_rho_tilde(x0), expected)

def test_linear_model_matching_its_auxiliary_has_no_weight():
    X, aux_factory = default_catalog().build("ou")
    obs = Observation(t=1.0, v=[0.4], L=[[1.0]], Sigma=[[1e-2]])
    recording = Recording(X, [obs], 0.0, KnownStartingPoint([0.0]))
    proposal = GuidedProposal(recording, aux_factory, dt=0.01)
    guided = proposal.segments[0].solver(X).X
    assert guided.match_drift
    t, x = proposal.segments[0].tGrid.ts[5], jnp.array([0.3])
    assert guided.G(t, x) == 0.0
    result = proposal.simulate(jax.random.PRNGKey(11))
    assert result.success
    assert result.log_likelihood_ratio == 0.0

    def slow_auxiliary(X, t0, T, vT, L=None):
        return LinearAuxiliaryProcess(B=-0.5 * jnp.eye(1), beta=jnp.zeros(1), sigma=jnp.eye(1), T=T, vT=vT)

    proposal = GuidedProposal(recording, slow_auxiliary, dt=0.01)
    guided = proposal.segments[0].solver(X).X
    assert guided.match_diffusivity and not guided.match_drift
    expected_G = jnp.dot(X.f(t, x) - guided.X_aux.f(t, x), guided.r(t, x))
    assert jnp.allclose(guided.G(t, x), expected_G)
    assert not jnp.allclose(expected_G, 0.0)

    pendulum = _pendulum_proposal()
    assert not pendulum.segments[0].solver(pendulum.X).X.match_drift

def test_auxiliary_factory_receives_observation_operator():
    X, aux_factory = default_catalog().build("fhn")
    obs = Observation(t=0.5, v=[0.2], L=[[0.0, 1.0]], Sigma=[[1e-2]])
    recording = Recording(X, [obs], 0.0, KnownStartingPoint([-0.5, -0.6]))
    segments, _ = backward_filter(X, recording, aux_factory, dt=0.01)
    assert jnp.isclose(segments[0].X_aux.B(0.0)[0, 0], 1.0 / X.parameters["chi"])

def test_forward_guide_needs_segments():
    X, _ = default_catalog().build("pendulum")
    with pytest.raises(ValueError):
        forward_guide([], X, jnp.zeros(2))
