"""Remote inference: endpoint client and the shared batching loop."""

from jobtracker.inference.batching import build_batches, run_batched
from jobtracker.inference.client import InferenceClient

__all__ = [
    "InferenceClient",
    "build_batches",
    "run_batched",
]
