from joblib import Parallel, delayed

from guidedbridge.setups import *
from guidedbridge.errors import GuidingTermDivergenceError, SingularDiffusivityError
from guidedbridge.observations import AllObservations, Recording
from guidedbridge.stochastic_processes.unconds import AuxFactory
from guidedbridge.models.guided_proposal import BridgeResult, GuidedProposal

def _simulate_recording(
    idx: int,
    recording: Recording,
    aux_factory: AuxFactory,
    rng_key: jax.Array,
    proposal_kwargs: Dict[str, Any],
    guided_start: bool
) -> BridgeResult:
    try:
        proposal = GuidedProposal(recording, aux_factory, **proposal_kwargs)
    except (GuidingTermDivergenceError, SingularDiffusivityError) as e:
        logging.error(f"Recording {idx}: backward pass failed, {e}")
        return BridgeResult(success=False, log_likelihood_ratio=-np.inf, paths=[])
    return proposal.simulate(rng_key, guided_start=guided_start)

def simulate_recordings(
    recordings: Union[AllObservations, Sequence[Recording]],
    aux_factory: AuxFactory,
    rng_key: jax.Array = DEFAULT_RNG_KEY,
    n_jobs: int = 1,
    prefer: str = "threads",
    guided_start: bool = False,
    **proposal_kwargs
) -> List[BridgeResult]:
    """ One guided bridge per recording, one joblib task per recording.

    The key is split into one independent stream per recording. A recording whose
    backward pass diverges yields a failed result without stopping the others.
    Remaining keyword arguments go to ``GuidedProposal``.
    """
    recordings = list(recordings)
    if len(recordings) == 0:
        return []
    keys = jax.random.split(rng_key, len(recordings))
    logging.info(f"Simulating {len(recordings)} recording(s) on {n_jobs} worker(s)")
    results = Parallel(n_jobs=n_jobs, prefer=prefer)(
        delayed(_simulate_recording)(idx, recording, aux_factory, keys[idx], proposal_kwargs, guided_start)
        for idx, recording in enumerate(recordings)
    )
    n_success = sum(result.success for result in results)
    logging.info(f"{n_success} of {len(results)} recording(s) simulated successfully")
    return results
