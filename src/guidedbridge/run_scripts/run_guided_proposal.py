import argparse
import logging

from tqdm import tqdm

from guidedbridge.setups import *
from guidedbridge.configs.guided_proposal_config import get_config
from guidedbridge.utils.read_config import read_config
from guidedbridge.models.guided_proposal import GuidedProposal

args = argparse.ArgumentParser(description="Simulate guided bridges for a recording")
args.add_argument("--model", type=str, default="pendulum", choices=["pendulum", "ou", "fhn"])
args.add_argument("--config", type=str, default=None, help="YAML file merged over the model defaults")
args.add_argument("--n_trials", type=int, default=None)
args.add_argument("--seed", type=int, default=None)
args.add_argument("--guided_start", action="store_true", help="draw x0 from the guided starting point proposal")

def main(config, guided_start: bool = False):
    proposal = GuidedProposal.from_config(config)
    rng_key = jax.random.PRNGKey(config["run"]["seed"])
    n_trials = config["run"]["n_trials"]

    log_weights, n_success = [], 0
    for _ in tqdm(range(n_trials), desc="Guided bridges"):
        rng_key, sub_key = jax.random.split(rng_key)
        result = proposal.simulate(sub_key, guided_start=guided_start)
        if result.success:
            n_success += 1
            log_weights.append(proposal.log_likelihood(result, guided_start=guided_start))

    logging.info(f"Success rate: {n_success / n_trials:.3f} ({n_success}/{n_trials})")
    if log_weights:
        log_weights = np.asarray(log_weights)
        logging.info(f"Log weights: mean {log_weights.mean():.4f}, std {log_weights.std():.4f}")
        log_mean = jsp.special.logsumexp(log_weights) - np.log(len(log_weights))
        logging.info(f"Log likelihood estimate: {float(log_mean):.4f}")
    return n_success, log_weights

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    args = args.parse_args()
    config = read_config(args.config) if args.config is not None else get_config(args.model)
    if args.n_trials is not None:
        config["run"]["n_trials"] = args.n_trials
    if args.seed is not None:
        config["run"]["seed"] = args.seed
    main(config, guided_start=args.guided_start)
