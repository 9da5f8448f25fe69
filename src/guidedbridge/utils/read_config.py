from omegaconf import OmegaConf, DictConfig

from guidedbridge.setups import *
from guidedbridge.errors import DimensionMismatchError
from guidedbridge.configs.guided_proposal_config import get_config, get_solver_config
from guidedbridge.observations import (
    Observation, Recording, GaussianStartingPoint, KnownStartingPoint, StartingPointPrior
)
from guidedbridge.stochastic_processes.examples import DiffusionCatalog, default_catalog
from guidedbridge.stochastic_processes.unconds import AuxFactory

def _parse_values(values):
    return [float('nan') if isinstance(x, str) and x.lower() == 'nan' else float(x)
            for x in values]

def read_config(config_path) -> DictConfig:
    """ Load a YAML config and merge it over the defaults of the model named in sde.name. """
    config = OmegaConf.load(config_path)
    if 'sde' not in config or 'name' not in config.sde:
        raise ValueError(f"Config {config_path} must name a model in sde.name")
    try:
        defaults = OmegaConf.create(get_config(config.sde.name))
    except ValueError:
        defaults = OmegaConf.create({"solver": get_solver_config()})
    config = OmegaConf.merge(defaults, config)
    if 'observations' in config:
        config.observations.vs = [_parse_values(v) for v in config.observations.vs]
    return config

def _build_prior(prior_config: Mapping[str, Any]) -> StartingPointPrior:
    prior_type = prior_config["type"]
    if prior_type == "gaussian":
        return GaussianStartingPoint(prior_config["mean"], prior_config["cov"])
    elif prior_type == "known":
        return KnownStartingPoint(prior_config["x0"])
    else:
        raise ValueError(f"Starting point prior {prior_type} not supported")

def build_recording(config, catalog: Optional[DiffusionCatalog] = None) -> Tuple[Recording, AuxFactory]:
    """ Turn a config (dict or DictConfig) into a Recording and the model's auxiliary factory.

    With observations.L set to None every observation is built from its NaN pattern,
    see ``Observation.from_nan_masked``.
    """
    if isinstance(config, DictConfig):
        config = OmegaConf.to_container(config, resolve=True)
    catalog = catalog if catalog is not None else default_catalog()

    sde_config = config["sde"]
    X, aux_factory = catalog.build(
        sde_config["name"], sde_config.get("params_X_unc"), state_dim=sde_config.get("X_dim")
    )
    if sde_config.get("X_dim", X.dim) != X.dim:
        raise DimensionMismatchError(f"Config X_dim={sde_config['X_dim']}, model {sde_config['name']} has {X.dim}")
    if sde_config.get("W_dim", X.noise_dim) != X.noise_dim:
        raise DimensionMismatchError(f"Config W_dim={sde_config['W_dim']}, model {sde_config['name']} has {X.noise_dim}")

    obs_config = config["observations"]
    L = obs_config.get("L")
    if len(obs_config["ts"]) != len(obs_config["vs"]):
        raise DimensionMismatchError(f"{len(obs_config['ts'])} observation times for {len(obs_config['vs'])} values")
    observations = []
    for t, v in zip(obs_config["ts"], obs_config["vs"]):
        v = _parse_values(v)
        if L is None:
            observations.append(Observation.from_nan_masked(t, v, eps=obs_config.get("eps", 1e-6)))
        else:
            observations.append(Observation(t=t, v=v, L=L, Sigma=obs_config["Sigma"]))

    recording = Recording(X, observations, obs_config["t0"], _build_prior(obs_config["x0_prior"]))
    return recording, aux_factory
