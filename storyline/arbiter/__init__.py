"""Checkpoint arbiter: asks an LLM whether the active objective was met.

Flow for one judgment:
  1. The orchestrator builds an EvaluationRequest (checkpoint, reason, turn,
     latest message, outgoing transition candidates) and queues it.
  2. ArbiterQueue drains requests one at a time, renders the prompt
     (prompt.py) and calls the LLM under stage "arbiter".
  3. parsing.py turns the reply into an ArbiterVerdict and reduces it to an
     outcome: "win", "fail" or "continue".
  4. The queue resolves the request's future and notifies its observer; a
     decisive outcome drops whatever is still queued.

Reasons: trigger (a win/fail pattern matched), timed (a timed edge came due),
interval (periodic check), manual (explicit request).
"""

# Re-export the public API so `from storyline.arbiter import ArbiterQueue` works.

from .parsing import (  # noqa: F401
    ArbiterVerdict,
    EvaluationOutcome,
    parse_verdict,
    resolve_outcome,
)

from .prompt import (  # noqa: F401
    EvaluationReason,
    EvaluationRequest,
    TransitionCandidate,
    build_arbiter_prompt,
    clamp_text,
)

from .queue import (  # noqa: F401
    ArbiterDisposedError,
    ArbiterPayload,
    ArbiterQueue,
)
