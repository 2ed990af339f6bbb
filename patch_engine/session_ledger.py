# patch_engine/session_ledger.py

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from patch_engine.error_handler import SessionAlreadyUndone, SessionNotFound
from patch_engine.records import Patch, Session


class SessionLedger:
    """
    Process-local undo ledger: one Session per successful modification turn.

    - Sessions are immutable; undo swaps in a copy with `undone=True` under the
      lock, so two concurrent undos of the same id cannot both succeed.
    - The swap happens only after the inverse patches were applied. If `apply`
      raises, the session stays undoable.
    - Sessions older than `ttl_s` seconds are treated as unknown (0 disables)
      and are dropped whenever a new session is recorded.
    - When `scope_id` is given, sessions recorded for another scope are unknown.
    """

    def __init__(self, ttl_s: int = 1800, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._ttl_s = ttl_s
        self._clock = clock

    @staticmethod
    def new_session_id(scope_id: str) -> str:
        return f"{scope_id}-{uuid.uuid4().hex[:12]}"

    def _sweep_unlocked(self, now: float) -> None:
        if self._ttl_s <= 0:
            return
        for sid in [sid for sid, s in self._sessions.items() if s.expired(now, self._ttl_s)]:
            del self._sessions[sid]

    def record(self, scope_id: str, patches: Sequence[Patch], *, session_id: Optional[str] = None) -> Session:
        if not patches:
            raise ValueError("a session needs at least one patch")
        sid = session_id or self.new_session_id(scope_id)
        now = self._clock()
        session = Session(session_id=sid, scope_id=scope_id, patches=list(patches), created=now)
        with self._lock:
            self._sweep_unlocked(now)
            if sid in self._sessions:
                raise ValueError(f"session already recorded: {sid}")
            self._sessions[sid] = session
        return session

    def _get_unlocked(self, session_id: str, scope_id: Optional[str]) -> Session:
        session = self._sessions.get(session_id)
        if session is None or (scope_id is not None and session.scope_id != scope_id):
            raise SessionNotFound(f"Unknown session: {session_id}", details={"session_id": session_id})
        if session.expired(self._clock(), self._ttl_s):
            del self._sessions[session_id]
            raise SessionNotFound(f"Session expired: {session_id}", details={"session_id": session_id})
        return session

    def undo(
        self,
        session_id: str,
        *,
        scope_id: Optional[str] = None,
        apply: Optional[Callable[[List[Patch]], Any]] = None,
    ) -> List[Patch]:
        """
        Return the inverse patches for a session and mark it undone.

        `apply` receives the inverse patches while the lock is held; the
        session is only marked undone once it returns. Raises SessionNotFound /
        SessionAlreadyUndone, or whatever `apply` raises.
        """
        with self._lock:
            session = self._get_unlocked(session_id, scope_id)
            if session.undone:
                raise SessionAlreadyUndone(
                    f"Session already undone: {session_id}", details={"session_id": session_id}
                )
            inverse = [p.reverted() for p in session.patches]
            if apply is not None:
                apply(inverse)
            self._sessions[session_id] = session.model_copy(update={"undone": True})
        return inverse

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
