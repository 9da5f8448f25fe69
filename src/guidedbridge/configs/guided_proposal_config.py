def get_solver_config():
    return {
        "dt": 1e-2,
        "t_scheme": "linear",
        "ode_kernel": "auto",
        "log_weight_bound": 1e10,
        "psd_atol": 1e-8
    }

def get_pendulum_config():
    config = {
        "sde": {
            "name": "pendulum",
            "X_dim": 2,
            "W_dim": 1,
            "params_X_unc": {
                "omega2": 4.0,
                "sigma": 0.5
            }
        },
        "observations": {
            "t0": 0.0,
            "ts": [1.0],
            "vs": [[0.95]],
            "L": [[1.0, 0.0]],
            "Sigma": [[1e-4]],
            "x0_prior": {
                "type": "gaussian",
                "mean": [0.0, 0.0],
                "cov": 5.0
            }
        },
        "solver": get_solver_config(),
        "run": {
            "seed": 42,
            "n_trials": 1000,
            "n_jobs": 1
        }
    }
    return config

def get_ou_config():
    config = {
        "sde": {
            "name": "ou",
            "X_dim": 1,
            "W_dim": 1,
            "params_X_unc": {
                "gamma": 1.0,
                "mu": 0.0,
                "sigma": 1.0
            }
        },
        "observations": {
            "t0": 0.0,
            "ts": [0.5, 1.0, 1.5, 2.0],
            "vs": [[0.3], [-0.2], [0.1], [0.4]],
            "L": [[1.0]],
            "Sigma": [[1e-2]],
            "x0_prior": {
                "type": "known",
                "x0": [0.0]
            }
        },
        "solver": get_solver_config(),
        "run": {
            "seed": 42,
            "n_trials": 1000,
            "n_jobs": 1
        }
    }
    return config

def get_fhn_config():
    config = {
        "sde": {
            "name": "fhn",
            "X_dim": 2,
            "W_dim": 1,
            "params_X_unc": {
                "chi": 0.1,
                "s": 0.0,
                "gamma": 1.5,
                "alpha": 0.8,
                "sigma": 0.3
            }
        },
        "observations": {
            "t0": 0.0,
            "ts": [2.0],
            "vs": [[-1.0]],
            "L": [[1.0, 0.0]],
            "Sigma": [[1e-4]],
            "x0_prior": {
                "type": "known",
                "x0": [-0.5, -0.6]
            }
        },
        "solver": get_solver_config(),
        "run": {
            "seed": 42,
            "n_trials": 200,
            "n_jobs": 1
        }
    }
    return config

def get_config(name: str):
    if name == "pendulum":
        return get_pendulum_config()
    elif name == "ou":
        return get_ou_config()
    elif name == "fhn":
        return get_fhn_config()
    else:
        raise ValueError(f"Model {name} not supported")
