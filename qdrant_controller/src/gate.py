from __future__ import annotations

import threading


class SchedulingGate:
    """Decides whether new reconciles may be scheduled in this process.

    Closed while shutting down or while another replica holds the lease.
    The leader flag is a :class:`threading.Event` because the elector runs on
    its own thread.
    """

    def __init__(self, *, leader: threading.Event | None = None) -> None:
        self.leader = leader if leader is not None else threading.Event()
        self._shutting_down = threading.Event()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    @property
    def is_leader(self) -> bool:
        return self.leader.is_set()

    @property
    def is_open(self) -> bool:
        return self.is_leader and not self.shutting_down

    @property
    def reason(self) -> str:
        if self.shutting_down:
            return "shutting down"
        if not self.is_leader:
            return "not leader"
        return "open"

    def begin_shutdown(self) -> None:
        self._shutting_down.set()
