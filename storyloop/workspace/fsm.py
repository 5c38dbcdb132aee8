"""Session lifecycle state machines using the transitions library.

A session carries two independent lifecycles, each persisted to a field of
its meta.env:

    EXECUTION_STATUS: running -> {completed, failed, killed}
    RESOLUTION:       unresolved -> {merged, discarded}

Terminal states have no outgoing transitions, so driving a finished session
again raises InvariantError.

Usage:
    from storyloop.workspace.fsm import execution_fsm

    fsm = execution_fsm(session_dir)
    fsm.complete()  # running -> completed
"""

import logging
from pathlib import Path
from typing import Callable

from transitions import Machine, MachineError

from storyloop.lib import envparse
from storyloop.lib.errors import InvariantError
from storyloop.workspace.session import META_FILE, now_iso, update_meta

logger = logging.getLogger(__name__)


EXECUTION_STATES = ["running", "completed", "failed", "killed"]
EXECUTION_TRANSITIONS = [
    {"trigger": "complete", "source": "running", "dest": "completed"},
    {"trigger": "fail", "source": "running", "dest": "failed"},
    {"trigger": "kill", "source": "running", "dest": "killed"},
]

RESOLUTION_STATES = ["unresolved", "merged", "discarded"]
RESOLUTION_TRANSITIONS = [
    {"trigger": "merge", "source": "unresolved", "dest": "merged"},
    {"trigger": "discard", "source": "unresolved", "dest": "discarded"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


class SessionFSM:
    """State machine over one meta.env field.

    Loads the initial state from meta.env, persists every transition back to
    it (together with LAST_ACTIVITY), and logs each change.
    """

    def __init__(
        self,
        session_dir: Path,
        field: str,
        states: list[str],
        transitions: list[dict],
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        self.session_dir = session_dir
        self.session_id = session_dir.name
        self.field = field
        self.states = states
        self.trigger_for = _build_trigger_lookup(transitions)
        self.on_transition = on_transition

        initial = self._load_state()
        if initial not in states:
            raise InvariantError(
                f"Session {self.session_id}: unknown {field} '{initial}'"
            )

        self.machine = Machine(
            model=self,
            states=states,
            transitions=transitions,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def _load_state(self) -> str:
        meta = envparse.load_env(str(self.session_dir / META_FILE))
        return meta.get(self.field, self.states[0])

    def _save_state(self) -> None:
        update_meta(self.session_dir, {self.field: self.state, "LAST_ACTIVITY": now_iso()})

    def on_state_change(self, event) -> None:
        """Callback after any state transition: persist and log."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.session_id}: {self.field} {from_state} -> {to_state} ({trigger})")

        self._save_state()

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def transition_to(self, dest: str) -> None:
        """Drive the machine to dest via the matching trigger.

        Raises:
            InvariantError: If no transition leads from the current state to dest
        """
        trigger = self.trigger_for.get((self.state, dest))
        if trigger is None:
            raise InvariantError(
                f"Session {self.session_id}: cannot move {self.field} from {self.state} to {dest}"
            )
        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvariantError(
                f"Session {self.session_id}: cannot move {self.field} from {self.state} to {dest}"
            ) from e


def execution_fsm(session_dir: Path) -> SessionFSM:
    """FSM over EXECUTION_STATUS."""
    return SessionFSM(session_dir, "EXECUTION_STATUS", EXECUTION_STATES, EXECUTION_TRANSITIONS)


def resolution_fsm(session_dir: Path) -> SessionFSM:
    """FSM over RESOLUTION."""
    return SessionFSM(session_dir, "RESOLUTION", RESOLUTION_STATES, RESOLUTION_TRANSITIONS)
