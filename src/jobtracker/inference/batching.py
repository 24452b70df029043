"""Batched remote inference with progress reporting and throttling.

The classifier and the extractor share one loop:
1. Split the input texts into fixed-size batches
2. Report (submitted_so_far, total) before each batch
3. Submit the batch in a worker thread and parse each entry
4. Pause between batches (never after the last)
5. Report (total, total) once at the end

Results are assigned back by position, so item k of batch b always lands
at input position b * batch_size + k.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from jobtracker.core.logging import get_logger

if TYPE_CHECKING:
    from jobtracker.inference.client import InferenceClient

logger = get_logger(__name__)

R = TypeVar("R")

ProgressCallback = Callable[[int, int], None]


def build_batches(texts: Sequence[str], batch_size: int) -> list[list[str]]:
    """Split texts into batches of at most ``batch_size``."""
    size = max(1, batch_size)
    return [list(texts[i : i + size]) for i in range(0, len(texts), size)]


async def run_batched(
    client: InferenceClient,
    texts: Sequence[str],
    parse_item: Callable[[Any], R],
    batch_size: int,
    batch_delay: float = 1.0,
    on_progress: ProgressCallback | None = None,
) -> list[R]:
    """Run ``texts`` through ``client`` in batches.

    Args:
        client: Endpoint client; fails fast when unconfigured
        texts: Input texts in submission order
        parse_item: Turns one raw result entry into a typed result
        batch_size: Texts per request
        batch_delay: Seconds to wait between batches
        on_progress: Receives (submitted_so_far, total)

    Returns:
        Parsed results aligned positionally with ``texts``

    Raises:
        ConfigurationError: If the endpoint is not configured
        InferenceError: If any batch fails or is malformed (fatal)
    """
    client.ensure_configured()

    total = len(texts)
    batches = build_batches(texts, batch_size)
    results: list[R] = []

    for index, batch in enumerate(batches):
        if on_progress:
            on_progress(len(results), total)

        logger.info(
            "inference_batch_start",
            task=client.name,
            batch=index + 1,
            total_batches=len(batches),
            size=len(batch),
        )

        raw_results = await asyncio.to_thread(client.infer, batch, index)
        results.extend(parse_item(entry) for entry in raw_results)

        # Throttle the shared inference backend
        if index < len(batches) - 1 and batch_delay > 0:
            await asyncio.sleep(batch_delay)

    if on_progress:
        on_progress(total, total)

    logger.info("inference_complete", task=client.name, items=total, batches=len(batches))
    return results
