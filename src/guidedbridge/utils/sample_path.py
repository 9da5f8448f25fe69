from dataclasses import dataclass, field
from typing import Dict, List, Union

import jax
import jax.numpy as jnp

# keys holding time information shared by every sample; all other arrays have a leading sample axis
SHARED_KEYS = ("ts", "dts")

@dataclass
class SamplePath:
    """ Named collection of arrays describing simulated trajectories.

    Every array except the time grid (``ts``) and its increments (``dts``) carries a
    leading sample axis, e.g. ``xs`` has shape (n_samples, n_steps + 1, dim) and
    ``log_likelihood_ratio`` has shape (n_samples,).
    """
    name: str = field(default="Default")
    path: Dict[str, jnp.ndarray] = field(default_factory=dict)

    def __init__(self, name: str = "", **kwargs):
        self.name = name
        self.path = {}
        for key, value in kwargs.items():
            self.add(key, value)

    def __str__(self) -> str:
        info = [f"{self.name} sample path contains {self.n_samples} samples, each sample runs {self.n_steps} steps:"]
        info.extend(f"{key}.shape: {value.shape}" for key, value in self.path.items())
        return "\n ".join(info)

    def __getitem__(self, idx: Union[int, slice]) -> "SamplePath":
        if isinstance(idx, slice):
            start, stop, step = idx.indices(self.n_samples)
            return SamplePath(self.name, **{
                key: value if key in SHARED_KEYS else value[start:stop:step, ...]
                for key, value in self.path.items()
            })
        else:
            if idx < 0:
                idx += self.n_samples
            if idx >= self.n_samples or idx < 0:
                raise IndexError(f"Index out of range: {idx} >= {self.n_samples}")
            return SamplePath(self.name, **{
                key: value if key in SHARED_KEYS else value[idx:idx+1, ...]
                for key, value in self.path.items()
            })

    def __getattr__(self, key: str) -> jnp.ndarray:
        if key in ("name", "path"):
            raise AttributeError(key)
        try:
            return self.path[key]
        except KeyError:
            raise AttributeError(f"{type(self).__name__} has no attribute '{key}'")

    @property
    def n_steps(self) -> int:
        if "xs" in self.path:
            return self.path["xs"].shape[1] - 1
        return len(self.path["ts"]) - 1 if "ts" in self.path else 0

    @property
    def n_samples(self) -> int:
        batched = [value for key, value in self.path.items() if key not in SHARED_KEYS]
        return batched[0].shape[0] if batched else 0

    def add(self, key: str, val: jnp.ndarray) -> None:
        self.path[key] = val

    def copy(self) -> "SamplePath":
        return SamplePath(self.name, **{k: v.copy() for k, v in self.path.items()})

    def is_finite(self) -> jnp.ndarray:
        """ Per-sample flag, True when every state of the sample is finite. """
        xs = self.path["xs"]
        return jnp.all(jnp.isfinite(xs), axis=tuple(range(1, xs.ndim)))

    @classmethod
    def concatenate(cls, paths: List["SamplePath"], name: str = "") -> "SamplePath":
        """ Join the paths of consecutive time segments into one path.

        Every segment starts where the previous one ended, so the first time point of
        each later segment is dropped. Per-step arrays are joined along the time axis,
        per-sample scalars (such as ``log_likelihood_ratio``) are summed. Keys missing
        from any of the paths are left out.
        """
        if len(paths) == 0:
            raise ValueError("Need at least one sample path to concatenate")
        keys = [key for key in paths[0].path if all(key in p.path for p in paths)]
        joined = {}
        for key in keys:
            values = [p.path[key] for p in paths]
            if key == "ts":
                joined[key] = jnp.concatenate([values[0]] + [v[1:] for v in values[1:]])
            elif key == "dts":
                joined[key] = jnp.concatenate(values)
            elif key == "xs":
                joined[key] = jnp.concatenate([values[0]] + [v[:, 1:] for v in values[1:]], axis=1)
            elif values[0].ndim == 1:
                joined[key] = sum(values[1:], values[0])
            else:
                joined[key] = jnp.concatenate(values, axis=1)
        return cls(name or paths[0].name, **joined)

    def tree_flatten(self):
        keys = tuple(self.path.keys())
        return tuple(self.path[k] for k in keys), (self.name, keys)

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        name, keys = aux_data
        obj = object.__new__(cls)
        obj.name = name
        obj.path = dict(zip(keys, children))
        return obj

jax.tree_util.register_pytree_node(SamplePath, SamplePath.tree_flatten, SamplePath.tree_unflatten)
