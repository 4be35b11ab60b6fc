"""
Supervised polling of asynchronous pool creation.

Each GUID gets at most one monitoring session. A session runs in its own
daemon thread, polls the agent with capped exponential backoff and records
the terminal outcome in the metadata store.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import AgentCommunicationError, PoolError
from .events import PoolEventBus
from .models import FAILED_STATES, READY_STATES, Pool, PoolState, detail_changes
from .store import PoolStore

logger = logging.getLogger(__name__)

DEFAULT_MONITOR_TIMEOUT = 1800.0


class MonitorOutcome(Enum):
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass
class BackoffPolicy:
    """Delay schedule between creation polls."""
    initial_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 30.0
    max_attempts: int = 60

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "BackoffPolicy":
        return cls(
            initial_delay=float(config.get('POOL_MONITOR_INITIAL_DELAY', 1.0)),
            multiplier=float(config.get('POOL_MONITOR_BACKOFF', 1.5)),
            max_delay=float(config.get('POOL_MONITOR_MAX_DELAY', 30.0)),
            max_attempts=int(config.get('POOL_MONITOR_MAX_ATTEMPTS', 60)),
        )

    def delays(self) -> Iterator[float]:
        """Yield one delay per attempt: initial, initial*m, initial*m^2... capped."""
        delay = self.initial_delay
        for _ in range(self.max_attempts):
            yield min(delay, self.max_delay)
            delay *= self.multiplier


@dataclass
class MonitorSession:
    """Live state of one GUID's creation monitoring."""
    guid: str
    deadline: float
    started_at: datetime = field(default_factory=datetime.now)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    outcome: MonitorOutcome = MonitorOutcome.POLLING
    pool: Optional[Pool] = None
    outputs: List[str] = field(default_factory=list)
    message: str = ""
    attempts: int = 0

    def cancel(self) -> None:
        self.cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)

    @property
    def is_running(self) -> bool:
        return not self.done.is_set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guid": self.guid,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "attempts": self.attempts,
            "message": self.message,
            "outputs": list(self.outputs),
        }


class CreationMonitor:
    """Polls the agent for one pool until creation reaches a terminal state."""

    def __init__(
        self,
        store: PoolStore,
        agent,
        events: PoolEventBus,
        backoff: Optional[BackoffPolicy] = None,
        timeout: float = DEFAULT_MONITOR_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.agent = agent
        self.events = events
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self._clock = clock

    def new_session(self, guid: str) -> MonitorSession:
        return MonitorSession(guid=guid, deadline=self._clock() + self.timeout)

    def monitor(self, session: MonitorSession) -> MonitorOutcome:
        """
        Run the polling loop for a session on the calling thread.

        Polls immediately, then waits for each backoff delay on the session's
        cancellation event, so cancel() interrupts a wait at once.

        Args:
            session: Session to drive; its outcome and result fields are filled in

        Returns:
            The terminal MonitorOutcome
        """
        guid = session.guid
        logger.info(f"Monitoring creation of pool {guid}", extra={"pool_guid": guid, "operation": "monitor"})

        outcome = MonitorOutcome.TIMED_OUT
        for delay in self.backoff.delays():
            if session.cancel_event.is_set():
                outcome = MonitorOutcome.CANCELLED
                break
            if self._clock() >= session.deadline:
                break

            session.attempts += 1
            result = self._poll(session)
            if result is not None:
                outcome = result
                break

            if session.attempts >= self.backoff.max_attempts:
                break
            remaining = session.deadline - self._clock()
            if remaining <= 0:
                break
            if session.cancel_event.wait(min(delay, remaining)):
                outcome = MonitorOutcome.CANCELLED
                break

        session.outcome = outcome
        if outcome == MonitorOutcome.TIMED_OUT:
            session.message = f"Gave up waiting for pool {guid} after {session.attempts} attempts"
            logger.warning(session.message, extra={"pool_guid": guid, "operation": "monitor"})
        elif outcome == MonitorOutcome.CANCELLED:
            session.message = f"Monitoring of pool {guid} cancelled"
            logger.info(session.message, extra={"pool_guid": guid, "operation": "monitor"})
        return outcome

    def _poll(self, session: MonitorSession) -> Optional[MonitorOutcome]:
        """One polling tick. Returns a terminal outcome, or None to keep polling."""
        guid = session.guid
        try:
            pool = self.store.get_pool(guid)
            if pool is None:
                session.message = f"Pool {guid} no longer exists"
                logger.warning(session.message)
                return MonitorOutcome.FAILED

            try:
                detail = self.agent.get_pool_detail(guid)
            except AgentCommunicationError as e:
                logger.warning(f"Attempt {session.attempts}: agent unreachable while polling {guid}: {e.message}")
                return None

            if not detail.success:
                logger.warning(f"Attempt {session.attempts}: failed to get status for {guid}: {detail.message}")
                return None

            if detail.state in READY_STATES:
                return self._complete(session, pool, detail)
            if detail.state in FAILED_STATES:
                return self._fail(session, pool, detail)

            changes = detail_changes(pool, detail, include_state=False)
            if changes:
                self.store.update_pool(guid, **changes)
            logger.debug(f"Pool {guid} still {detail.state or 'unknown'} (attempt {session.attempts})")
            return None
        except PoolError as e:
            logger.error(f"Error while monitoring pool {guid}: {e.message}")
            return None

    def _complete(self, session: MonitorSession, pool: Pool, detail) -> MonitorOutcome:
        guid = session.guid
        fields = detail_changes(pool, detail, include_state=False)
        fields.update(state=PoolState.READY.value, enabled=True)
        updated = self.store.complete_creation(guid, fields, [d.serial for d in detail.drives if d.serial])
        if updated is None:
            session.message = f"Pool {guid} no longer exists"
            return MonitorOutcome.FAILED

        session.pool = updated
        session.message = f"Pool {guid} is ready"
        logger.info(session.message, extra={"pool_guid": guid, "operation": "monitor"})
        self.events.publish(guid, "created")
        return MonitorOutcome.READY

    def _fail(self, session: MonitorSession, pool: Pool, detail) -> MonitorOutcome:
        guid = session.guid
        try:
            outputs = self.agent.get_pool_creation_outputs(guid).outputs
        except AgentCommunicationError as e:
            logger.warning(f"Could not fetch creation outputs for {guid}: {e.message}")
            outputs = []
        session.outputs = list(outputs)
        for line in outputs:
            logger.error(f"Pool {guid} creation output: {line}")

        fields = detail_changes(pool, detail, include_state=False)
        fields.update(state=detail.state, enabled=False)
        self.store.complete_creation(guid, fields)

        session.message = f"Pool {guid} creation failed with state {detail.state}"
        logger.error(session.message, extra={"pool_guid": guid, "operation": "monitor"})
        self.events.publish(guid, "creation_failed")
        return MonitorOutcome.FAILED


class CreationMonitorRegistry:
    """Owns the running monitor sessions, one per GUID."""

    def __init__(self, monitor: CreationMonitor):
        self.monitor = monitor
        self._sessions: Dict[str, MonitorSession] = {}
        self._lock = threading.Lock()

    def start(self, guid: str) -> Tuple[MonitorSession, bool]:
        """
        Start monitoring a GUID unless a session for it is already alive.

        Returns:
            Tuple of (session, started) where started is False when an
            existing session was returned
        """
        with self._lock:
            existing = self._sessions.get(guid)
            if existing is not None:
                return existing, False
            session = self.monitor.new_session(guid)
            self._sessions[guid] = session

        thread = threading.Thread(
            target=self._run,
            args=(session,),
            name=f"pool-monitor-{guid}",
            daemon=True,
        )
        thread.start()
        return session, True

    def get(self, guid: str) -> Optional[MonitorSession]:
        with self._lock:
            return self._sessions.get(guid)

    def is_monitoring(self, guid: str) -> bool:
        return self.get(guid) is not None

    def active_guids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def cancel(self, guid: str) -> bool:
        """Signal cancellation. Returns False when no session is running."""
        session = self.get(guid)
        if session is None:
            return False
        session.cancel()
        return True

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.cancel()
        for session in sessions:
            session.wait(timeout)

    def _run(self, session: MonitorSession) -> None:
        try:
            self.monitor.monitor(session)
        except Exception:
            session.outcome = MonitorOutcome.FAILED
            session.message = f"Monitoring of pool {session.guid} crashed"
            logger.exception(session.message, extra={"pool_guid": session.guid, "operation": "monitor"})
        finally:
            with self._lock:
                if self._sessions.get(session.guid) is session:
                    del self._sessions[session.guid]
            session.done.set()
