import jax
import jax.numpy as jnp
import numpy as np

from guidedbridge.observations import Observation, KnownStartingPoint, Recording, AllObservations
from guidedbridge.stochastic_processes.unconds import LinearAuxiliaryProcess
from guidedbridge.stochastic_processes.examples import default_catalog, ou_auxiliary
from guidedbridge.models.parallel import simulate_recordings

def _ou_recordings(values):
    X, _ = default_catalog().build("ou")
    recordings = AllObservations()
    for v in values:
        observations = [Observation(t=t, v=[v], L=[[1.0]], Sigma=[[1e-2]]) for t in (0.5, 1.0)]
        recordings.add(Recording(X, observations, 0.0, KnownStartingPoint([0.0])))
    return recordings

def _fragile_auxiliary(X, t0, T, vT, L=None):
    # no usable auxiliary process for far away observations
    if float(vT[0]) > 100.0:
        return LinearAuxiliaryProcess(
            B=-jnp.eye(1), beta=jnp.zeros(1), sigma=lambda t: jnp.full((1, 1), jnp.nan), T=T, vT=vT
        )
    return ou_auxiliary(X, t0, T, vT, L)

def test_simulate_recordings():
    recordings = _ou_recordings([0.1, -0.3, 0.5])
    results = simulate_recordings(recordings, ou_auxiliary, jax.random.PRNGKey(0), n_jobs=2, dt=0.01)
    assert len(results) == 3
    assert all(result.success for result in results)
    assert all(len(result.paths) == 2 for result in results)
    # distinct random streams per recording
    assert not jnp.array_equal(results[0].paths[0].dWs, results[1].paths[0].dWs)

def test_simulate_recordings_is_reproducible():
    recordings = _ou_recordings([0.1, -0.3])
    first = simulate_recordings(recordings, ou_auxiliary, jax.random.PRNGKey(1), n_jobs=2)
    second = simulate_recordings(recordings, ou_auxiliary, jax.random.PRNGKey(1), n_jobs=1)
    for a, b in zip(first, second):
        assert jnp.array_equal(a.trajectory.xs, b.trajectory.xs)

def test_failing_recording_is_isolated():
    recordings = _ou_recordings([0.1, 1000.0, 0.5])
    results = simulate_recordings(recordings, _fragile_auxiliary, jax.random.PRNGKey(2), n_jobs=2)
    assert [result.success for result in results] == [True, False, True]
    assert results[1].paths == []
    assert results[1].log_likelihood_ratio == -np.inf

def test_no_recordings():
    assert simulate_recordings([], ou_auxiliary) == []
