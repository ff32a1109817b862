"""
Worker health state machine.

Transitions are validated against a fixed table; Dead is terminal for a
launch cycle because the supervisor alerts but never restarts.
"""

from prov_common.models import HealthEvent, WorkerHealth


class WorkerHealthStateMachine:
    """Validates and applies worker health transitions."""

    def __init__(self):
        self._transitions = {
            (WorkerHealth.STARTING, HealthEvent.PROBE_OK): WorkerHealth.READY,
            (WorkerHealth.STARTING, HealthEvent.PROBE_TIMEOUT): WorkerHealth.DEGRADED,
            (WorkerHealth.STARTING, HealthEvent.SESSION_LOST): WorkerHealth.DEAD,
            (WorkerHealth.READY, HealthEvent.HTTP_UP): WorkerHealth.LIVE,
            (WorkerHealth.READY, HealthEvent.HTTP_DOWN): WorkerHealth.DEAD,
            (WorkerHealth.READY, HealthEvent.SESSION_LOST): WorkerHealth.DEAD,
            (WorkerHealth.DEGRADED, HealthEvent.HTTP_UP): WorkerHealth.LIVE,
            (WorkerHealth.DEGRADED, HealthEvent.SESSION_LOST): WorkerHealth.DEAD,
            (WorkerHealth.LIVE, HealthEvent.HTTP_DOWN): WorkerHealth.DEAD,
            (WorkerHealth.LIVE, HealthEvent.SESSION_LOST): WorkerHealth.DEAD,
        }

    def can_transition(self, current: WorkerHealth, event: HealthEvent) -> bool:
        return (current, event) in self._transitions

    def transition(self, current: WorkerHealth, event: HealthEvent) -> WorkerHealth:
        """
        Raises:
            ValueError: If the event is not valid in the current state
        """
        if not self.can_transition(current, event):
            raise ValueError(f"Invalid transition: {current.value} + {event.value}")
        return self._transitions[(current, event)]

    def is_terminal(self, state: WorkerHealth) -> bool:
        return state == WorkerHealth.DEAD
