"""Application state machine.

The state machine is the single coordinating variable of a session. Every
component reads it and the session fires triggers on it; a trigger that is
not legal from the current state raises ``IllegalTransitionError`` and leaves
the state untouched. That is also how the machine gates external calls: the
session fires ``ANALYZE``/``GENERATE`` before issuing a call, never after.

Transitions:
    Idle/ReadyToGenerate/Complete/Error/Cropping --upload--> Cropping
    Cropping --drained_first--> Analyzing
    Cropping --drained--> Idle
    Idle/ReadyToGenerate/Complete/Error --analyze--> Analyzing
    Analyzing --analysis_ok--> ReadyToGenerate
    Analyzing --analysis_failed--> Error
    ReadyToGenerate/Complete/Error --generate--> Generating
    Generating --generation_done--> Complete   (partial failure included)
    Generating --generation_setup_failed--> Error
    any idle-ish state --restore--> Complete
    any idle-ish state --fail--> Error
    any --reset--> Idle
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from qsnap.core.errors import IllegalTransitionError
from qsnap.core.models import AppState

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    UPLOAD = "upload"
    DRAINED_FIRST = "drained_first"
    DRAINED = "drained"
    ANALYZE = "analyze"
    ANALYSIS_OK = "analysis_ok"
    ANALYSIS_FAILED = "analysis_failed"
    GENERATE = "generate"
    GENERATION_DONE = "generation_done"
    GENERATION_SETUP_FAILED = "generation_setup_failed"
    RESTORE = "restore"
    FAIL = "fail"
    RESET = "reset"


_SETTLED = frozenset(
    {
        AppState.IDLE,
        AppState.CROPPING,
        AppState.READY_TO_GENERATE,
        AppState.COMPLETE,
        AppState.ERROR,
    }
)

# trigger -> (legal source states, target state)
TRANSITIONS: dict[Trigger, tuple[frozenset[AppState], AppState]] = {
    Trigger.UPLOAD: (_SETTLED, AppState.CROPPING),
    Trigger.DRAINED_FIRST: (frozenset({AppState.CROPPING}), AppState.ANALYZING),
    Trigger.DRAINED: (frozenset({AppState.CROPPING}), AppState.IDLE),
    Trigger.ANALYZE: (
        frozenset({AppState.IDLE, AppState.READY_TO_GENERATE, AppState.COMPLETE, AppState.ERROR}),
        AppState.ANALYZING,
    ),
    Trigger.ANALYSIS_OK: (frozenset({AppState.ANALYZING}), AppState.READY_TO_GENERATE),
    Trigger.ANALYSIS_FAILED: (frozenset({AppState.ANALYZING}), AppState.ERROR),
    Trigger.GENERATE: (
        frozenset({AppState.READY_TO_GENERATE, AppState.COMPLETE, AppState.ERROR}),
        AppState.GENERATING,
    ),
    Trigger.GENERATION_DONE: (frozenset({AppState.GENERATING}), AppState.COMPLETE),
    Trigger.GENERATION_SETUP_FAILED: (frozenset({AppState.GENERATING}), AppState.ERROR),
    Trigger.RESTORE: (_SETTLED, AppState.COMPLETE),
    Trigger.FAIL: (_SETTLED, AppState.ERROR),
    Trigger.RESET: (frozenset(AppState), AppState.IDLE),
}

TransitionListener = Callable[[AppState, AppState, Trigger], None]


class AppStateMachine:
    """Holds the current ``AppState`` and applies triggers.

    Example:
        >>> machine = AppStateMachine()
        >>> machine.fire(Trigger.UPLOAD)
        <AppState.CROPPING: 'CROPPING'>
        >>> machine.can(Trigger.GENERATE)
        False
    """

    def __init__(self, initial: AppState = AppState.IDLE) -> None:
        self._state = initial
        self._listeners: list[TransitionListener] = []

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def is_busy(self) -> bool:
        """True while an external call is in flight."""
        return self._state in (AppState.ANALYZING, AppState.GENERATING)

    def can(self, trigger: Trigger) -> bool:
        """Whether ``trigger`` is legal from the current state. No side effects."""
        sources, _ = TRANSITIONS[trigger]
        return self._state in sources

    def fire(self, trigger: Trigger) -> AppState:
        """Apply a trigger and notify listeners.

        Raises:
            IllegalTransitionError: If the trigger is not legal from the current state.
        """
        sources, target = TRANSITIONS[trigger]
        if self._state not in sources:
            raise IllegalTransitionError(self._state.value, trigger.value)

        previous = self._state
        self._state = target
        logger.debug(f"State {previous.value} --{trigger.value}--> {target.value}")
        for listener in list(self._listeners):
            listener(previous, target, trigger)
        return target

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)
