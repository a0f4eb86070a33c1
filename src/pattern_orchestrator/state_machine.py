"""Install pipeline state machine using the ``transitions`` library.

Defines 8 states and 7 transitions.  Forward transitions are guarded by the
result of the stage just finished; ``fail`` is reachable from every
non-final state.
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine, AsyncState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------
STATES: list[AsyncState] = [
    AsyncState("init"),
    AsyncState("infra_deploying"),
    AsyncState("secrets_loading"),
    AsyncState("operators_installing"),
    AsyncState("controller_deploying"),
    AsyncState("applications_syncing"),
    AsyncState("complete"),
    AsyncState("failed"),
]

ACTIVE_STATES = [
    "init",
    "infra_deploying",
    "secrets_loading",
    "operators_installing",
    "controller_deploying",
    "applications_syncing",
]

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {
        "trigger": "start_infra",
        "source": "init",
        "dest": "infra_deploying",
        "conditions": ["is_configured"],
    },
    {
        "trigger": "infra_done",
        "source": "infra_deploying",
        "dest": "secrets_loading",
        "conditions": ["stage_passed"],
    },
    {
        "trigger": "secrets_done",
        "source": "secrets_loading",
        "dest": "operators_installing",
        "conditions": ["stage_passed"],
    },
    {
        "trigger": "operators_done",
        "source": "operators_installing",
        "dest": "controller_deploying",
        "conditions": ["stage_passed"],
    },
    {
        "trigger": "controller_done",
        "source": "controller_deploying",
        "dest": "applications_syncing",
        "conditions": ["stage_passed"],
    },
    {
        "trigger": "applications_done",
        "source": "applications_syncing",
        "dest": "complete",
        "conditions": ["stage_passed"],
    },
    {
        "trigger": "fail",
        "source": ACTIVE_STATES,
        "dest": "failed",
    },
]

# ---------------------------------------------------------------------------
# Stage -> (state entered while it runs, trigger fired when it passes)
# ---------------------------------------------------------------------------
STAGE_STATES: dict[str, tuple[str, str]] = {
    "infra_deploy": ("infra_deploying", "infra_done"),
    "secrets_load": ("secrets_loading", "secrets_done"),
    "operators": ("operators_installing", "operators_done"),
    "controller_deploy": ("controller_deploying", "controller_done"),
    "applications": ("applications_syncing", "applications_done"),
}


def create_pipeline_machine(
    model: Any, initial_state: str = "init"
) -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    The model object must implement the guard methods referenced in
    ``TRANSITIONS`` (``is_configured`` and ``stage_passed``).  They receive
    the transitions ``EventData`` because ``send_event`` is enabled.

    Args:
        model: The object whose state the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    machine = AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=True,
        ignore_invalid_triggers=True,
    )
    return machine
