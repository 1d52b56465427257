"""
Canonical onboarding step order and per-step rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from utils.errors import UnknownStep

WELCOME = "welcome"
BUSINESS_TYPE = "business-type"
EMAIL_PROVIDER = "email-provider"
LABEL_MAPPING = "label-mapping"
TEAM_NOTIFICATIONS = "team-notifications"
REVIEW = "review"
COMPLETE = "complete"


@dataclass(frozen=True)
class StepDefinition:
    step_id: str
    title: str
    skippable: bool = False
    # The step only makes sense with a live mailbox connection, so a
    # skipped email-provider step does not satisfy it.
    requires_connection: bool = False
    # Completion comes from live state instead of a stored marker.
    derived: bool = False
    # Every earlier step must be truly complete; skips are not honoured.
    strict: bool = False


STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition(WELCOME, "Welcome"),
    StepDefinition(BUSINESS_TYPE, "Choose your business type"),
    StepDefinition(EMAIL_PROVIDER, "Connect your mailbox", skippable=True, derived=True),
    StepDefinition(LABEL_MAPPING, "Map categories to labels", skippable=True, requires_connection=True),
    StepDefinition(TEAM_NOTIFICATIONS, "Team notifications"),
    StepDefinition(REVIEW, "Review"),
    StepDefinition(COMPLETE, "Finish", strict=True),
)

STEP_ORDER: List[str] = [s.step_id for s in STEPS]
_BY_ID: Dict[str, StepDefinition] = {s.step_id: s for s in STEPS}


def get_step(step_id: str) -> StepDefinition:
    try:
        return _BY_ID[step_id]
    except KeyError:
        raise UnknownStep(f"Unknown onboarding step '{step_id}'") from None


def step_index(step_id: str) -> int:
    return STEP_ORDER.index(get_step(step_id).step_id)


def steps_before(step_id: str) -> List[StepDefinition]:
    return list(STEPS[: step_index(step_id)])


def _deferred_by_connection(step: StepDefinition, done: set) -> bool:
    """A connection-gated step waits, unasked, while the mailbox is not connected."""
    return step.requires_connection and EMAIL_PROVIDER not in done


def blocking_step(
    step_id: str,
    completed: Iterable[str],
    skipped: Iterable[str],
    *,
    honour_skips: Optional[bool] = None,
) -> Optional[str]:
    """
    First earlier step that keeps ``step_id`` from being completed, or None.

    An earlier step counts as satisfied when it is complete, or when
    ``step_id`` neither needs a live connection nor is strict and the
    earlier step is skippable and either was skipped or is still waiting
    for a mailbox connection. Skipping itself passes ``honour_skips=True``:
    deferring label-mapping behind a deferred email-provider is allowed.
    """
    target = get_step(step_id)
    done = set(completed)
    passed = set(skipped)
    if honour_skips is None:
        honour_skips = not (target.requires_connection or target.strict)
    for prior in steps_before(step_id):
        if prior.step_id in done:
            continue
        if honour_skips and prior.skippable and (
            prior.step_id in passed or _deferred_by_connection(prior, done)
        ):
            continue
        return prior.step_id
    return None


def next_step(completed: Iterable[str], skipped: Iterable[str]) -> str:
    """
    First step the user should see.

    Skipped steps, and steps that need a mailbox while none is connected,
    are passed over until only they (and ``complete``) remain; then the
    first deferred one comes back, since ``complete`` does not accept skips.
    """
    done = set(completed)
    passed = set(skipped)
    for step in STEPS:
        if step.step_id == COMPLETE:
            break
        if step.step_id in done or step.step_id in passed:
            continue
        if _deferred_by_connection(step, done):
            continue
        return blocking_step(step.step_id, done, passed) or step.step_id
    return blocking_step(COMPLETE, done, passed) or COMPLETE
