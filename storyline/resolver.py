"""Transition resolution: turn an evaluation outcome into one graph edge."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from storyline.story import Transition

logger = logging.getLogger(__name__)


def resolve_transition(
    transitions: Sequence[Transition],
    checkpoint_key: str,
    outcome: str,
    suggested_id: str | None = None,
) -> Transition | None:
    """Pick the edge to follow out of `checkpoint_key` for `outcome`.

    1. the oracle-suggested id, if it names one of the candidate edges
    2. the only candidate edge
    3. the first candidate in definition order (logged as a fallback)

    Returns None for "continue" or when no edge exists for the outcome.
    """
    if outcome not in ("win", "fail"):
        return None

    candidates = [
        edge for edge in transitions
        if edge.source == checkpoint_key and edge.outcome == outcome
    ]
    if not candidates:
        logger.info("No %s transition out of checkpoint %s", outcome, checkpoint_key)
        return None

    if suggested_id:
        wanted = str(suggested_id).strip()
        for edge in candidates:
            if edge.id == wanted:
                return edge
        logger.info(
            "Suggested transition %r is not a %s edge of checkpoint %s",
            wanted, outcome, checkpoint_key,
        )

    if len(candidates) == 1:
        return candidates[0]

    chosen = candidates[0]
    logger.info(
        "Ambiguous %s transition out of %s (%s); falling back to first defined edge %s",
        outcome, checkpoint_key, ", ".join(e.id for e in candidates), chosen.id,
    )
    return chosen
