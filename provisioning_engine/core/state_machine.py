# provisioning_engine/core/state_machine.py

from datetime import datetime
from typing import Optional

from provisioning_engine.core.errors import InvalidStateTransition
from provisioning_engine.core.models import Server, ServerPhase, utcnow


_OPERATIONAL = {
    ServerPhase.RUNNING,
    ServerPhase.STARTING,
    ServerPhase.STOPPING,
    ServerPhase.RESTARTING,
    ServerPhase.UPDATING,
    ServerPhase.REINSTALLING,
    ServerPhase.DELETING,
}

ALLOWED_TRANSITIONS = {
    ServerPhase.CREATING: {
        ServerPhase.INSTALLING,
        ServerPhase.DELETING,
    },
    ServerPhase.INSTALLING: _OPERATIONAL,
    ServerPhase.RUNNING: _OPERATIONAL,
    ServerPhase.STARTING: _OPERATIONAL,
    ServerPhase.STOPPING: _OPERATIONAL,
    ServerPhase.RESTARTING: _OPERATIONAL,
    # a failed daemon patch leaves the server here until the next operation
    ServerPhase.UPDATING: _OPERATIONAL,
    ServerPhase.REINSTALLING: _OPERATIONAL | {ServerPhase.INSTALLING},
    ServerPhase.DELETING: set(),
}


class ServerStateMachine:
    @staticmethod
    def can_transition(current: ServerPhase, new_phase: ServerPhase) -> bool:
        if current == new_phase:
            return True
        return new_phase in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(
        server: Server,
        new_phase: ServerPhase,
        *,
        now: Optional[datetime] = None,
    ) -> Server:
        now = now or utcnow()

        current = server.phase

        if not ServerStateMachine.can_transition(current, new_phase):
            raise InvalidStateTransition(
                f"Cannot transition server {server.server_id} from {current.value} to {new_phase.value}"
            )

        server.phase = new_phase
        server.phase_changed_at = now
        server.updated_at = now
        return server
