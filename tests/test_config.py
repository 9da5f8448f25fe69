import numpy as np
import pytest

from guidedbridge.errors import DimensionMismatchError
from guidedbridge.observations import GaussianStartingPoint, KnownStartingPoint
from guidedbridge.configs.guided_proposal_config import (
    get_config, get_pendulum_config, get_ou_config, get_fhn_config
)
from guidedbridge.utils.read_config import read_config, build_recording
from guidedbridge.run_scripts.run_guided_proposal import main

def test_config_factories():
    for name, factory in [("pendulum", get_pendulum_config), ("ou", get_ou_config), ("fhn", get_fhn_config)]:
        config = get_config(name)
        assert config == factory()
        assert config["sde"]["name"] == name
        assert set(config) == {"sde", "observations", "solver", "run"}
    with pytest.raises(ValueError):
        get_config("landmark")

def test_build_recording():
    recording, aux_factory = build_recording(get_pendulum_config())
    assert recording.X.dim == 2
    assert recording.X.parameters["omega2"] == 4.0
    assert len(recording) == 1
    assert recording.observations[0].t == 1.0
    assert isinstance(recording.x0_prior, GaussianStartingPoint)
    aux = aux_factory(recording.X, 0.0, 1.0, recording.observations[0].v)
    assert aux.dim == 2

    recording, _ = build_recording(get_fhn_config())
    assert isinstance(recording.x0_prior, KnownStartingPoint)

def test_build_recording_validation():
    config = get_pendulum_config()
    config["sde"]["W_dim"] = 2
    with pytest.raises(DimensionMismatchError):
        build_recording(config)

    config = get_pendulum_config()
    config["observations"]["vs"] = [[0.95], [0.5]]
    with pytest.raises(DimensionMismatchError):
        build_recording(config)

    config = get_pendulum_config()
    config["observations"]["x0_prior"] = {"type": "uniform"}
    with pytest.raises(ValueError):
        build_recording(config)

def test_read_config(tmp_path):
    config_path = tmp_path / "pendulum.yaml"
    config_path.write_text(
        "sde:\n"
        "  name: pendulum\n"
        "  params_X_unc:\n"
        "    sigma: 0.3\n"
        "observations:\n"
        "  ts: [0.5, 1.0]\n"
        "  vs: [['nan', 0.1], [0.9, 'nan']]\n"
        "  L: null\n"
        "  eps: 1.0e-4\n"
        "run:\n"
        "  n_trials: 10\n"
    )
    config = read_config(config_path)
    assert config.sde.params_X_unc.sigma == 0.3
    assert config.sde.params_X_unc.omega2 == 4.0
    assert config.solver.dt == 1e-2
    assert config.run.n_trials == 10
    assert np.isnan(config.observations.vs[0][0])

    recording, _ = build_recording(config)
    assert recording.X.parameters["sigma"] == 0.3
    first, second = recording.observations
    assert first.L.tolist() == [[0.0, 1.0]]
    assert second.L.tolist() == [[1.0, 0.0]]
    assert np.allclose(first.Sigma, 1e-4)

def test_read_config_needs_a_model(tmp_path):
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("run:\n  n_trials: 10\n")
    with pytest.raises(ValueError):
        read_config(config_path)

def test_run_script():
    config = get_ou_config()
    config["run"]["n_trials"] = 5
    n_success, log_weights = main(config)
    assert n_success == 5
    assert log_weights.shape == (5, )
    assert np.all(np.isfinite(log_weights))
