"""
Process-wide signaling state.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from ..media.engine import ProducerHandle
from ..session import Session

LOG = logging.getLogger(__name__)


class SignalingState:
    """
    Registry shared by every connection.

    Holds the router capabilities (read-only once loaded), the live sessions
    and an index from producer id to the session that published it, so a
    subscriber can look up any producer rather than assuming a single one.
    """

    def __init__(self) -> None:
        self.router_capabilities: Optional[Dict[str, Any]] = None
        self.sessions: Dict[str, Session] = {}
        self._producers: "OrderedDict[str, Tuple[str, ProducerHandle]]" = OrderedDict()

    # ------------------------------------------------------------------ sessions

    def add_session(self, session: Session) -> None:
        self.sessions[session.session_id] = session

    def remove_session(self, session: Session) -> Optional[Session]:
        self.forget_producers(session)
        return self.sessions.pop(session.session_id, None)

    # ------------------------------------------------------------------ producers

    def register_producer(self, session: Session, producer: ProducerHandle) -> None:
        self._producers[producer.id] = (session.session_id, producer)
        self._producers.move_to_end(producer.id)
        LOG.debug("Indexed %s producer %s for session %s", producer.kind, producer.id, session.session_id[:8])

    def forget_producers(self, session: Session) -> List[str]:
        removed = [
            producer_id
            for producer_id, (owner, _) in self._producers.items()
            if owner == session.session_id
        ]
        for producer_id in removed:
            self._producers.pop(producer_id, None)
        return removed

    def resolve_producer(self, producer_id: Optional[str] = None) -> Optional[ProducerHandle]:
        """
        Find an open producer by id, or the most recently published one when
        ``producer_id`` is not given.
        """

        if producer_id is not None:
            entry = self._producers.get(producer_id)
            if entry is None or entry[1].closed:
                return None
            return entry[1]

        for _, producer in reversed(self._producers.values()):
            if not producer.closed:
                return producer
        return None

    # ------------------------------------------------------------------ snapshots

    def snapshot(self) -> Dict[str, Any]:
        return {
            "routerCapabilitiesLoaded": self.router_capabilities is not None,
            "sessions": [session.snapshot() for session in self.sessions.values()],
            "producers": [
                {"id": producer_id, "sessionId": owner, "kind": producer.kind, "closed": producer.closed}
                for producer_id, (owner, producer) in self._producers.items()
            ],
        }


__all__ = ["SignalingState"]
