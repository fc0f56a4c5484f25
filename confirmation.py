"""
CheckOnMe confirmation protocol

A challenge session is opened when the owner is shown the code prompt and
holds the attempt budget for that prompt only. Sessions are keyed by
(user_id, checkin_id), so two overdue check-ins never share a counter, and each
session has its own lock so submissions within it are strictly sequential.

submit() order of checks:
  1. format            -> InvalidFormat      (no attempt used, no store read)
  2. stored status     -> AlreadyResolved    (sweep or another session won)
  3. response window   -> DeadlinePassed     (no attempt used; the sweep escalates)
  4. match             -> acknowledged
  5. mismatch          -> CodeMismatch(n), or escalate + AttemptsExhausted at 0
                          (AlreadyResolved if the sweep escalated it first)
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import checkins
import lifecycle
from config import ATTEMPT_BUDGET
from errors import (
    AlreadyResolved,
    AttemptsExhausted,
    CodeMismatch,
    DeadlinePassed,
    InvalidFormat,
    NotFound,
    StoreUnavailable,
)
from models import CheckIn
from utils import now_utc

log = logging.getLogger(__name__)


@dataclass
class ChallengeSession:
    user_id: str
    checkin_id: str
    budget: int
    attempts_remaining: int
    opened_at: dt.datetime
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining <= 0


class ChallengeRegistry:
    def __init__(self, budget: int = ATTEMPT_BUDGET):
        self.budget = budget
        self._sessions: Dict[Tuple[str, str], ChallengeSession] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, checkin_id: str) -> Optional[ChallengeSession]:
        with self._lock:
            return self._sessions.get((user_id, checkin_id))

    def _close(self, user_id: str, checkin_id: str) -> None:
        with self._lock:
            self._sessions.pop((user_id, checkin_id), None)

    def open(self, user_id: str, checkin_id: str, now: Optional[dt.datetime] = None) -> ChallengeSession:
        """
        Start (or resume) the challenge for an open check-in and mark it active.
        Re-opening returns the live session so the budget can't be reset by reloading.
        """
        now = now or now_utc()
        checkins.activate_checkin(user_id, checkin_id, now=now)
        with self._lock:
            session = self._sessions.get((user_id, checkin_id))
            if session is None:
                session = ChallengeSession(user_id, checkin_id, self.budget, self.budget, now)
                self._sessions[(user_id, checkin_id)] = session
                log.info("challenge opened for %s (%d attempts)", checkin_id, self.budget)
            return session

    def submit(self, user_id: str, checkin_id: str, code: str, now: Optional[dt.datetime] = None) -> CheckIn:
        if not lifecycle.is_valid_code(code):
            raise InvalidFormat("Please enter a 4-digit code")
        now = now or now_utc()

        session = self.get(user_id, checkin_id)
        if session is None:
            session = self.open(user_id, checkin_id, now=now)

        with session.lock:
            checkin = checkins.get_checkin(user_id, checkin_id)
            if not lifecycle.is_open(checkin):
                self._close(user_id, checkin_id)
                raise AlreadyResolved(checkin.status)

            if session.exhausted:
                # budget spent but the escalation write didn't land last time
                return self._exhaust(session, now)

            if not lifecycle.within_response_window(checkin, now):
                raise DeadlinePassed("The response window for this check-in has closed")

            if code == checkin.confirmation_code:
                acked = checkins.acknowledge_checkin(user_id, checkin_id, now=now)
                self._close(user_id, checkin_id)
                return acked

            session.attempts_remaining -= 1
            log.info("wrong code for %s; %d attempt(s) left", checkin_id, session.attempts_remaining)
            if session.exhausted:
                return self._exhaust(session, now)
            latest = checkins.get_checkin(user_id, checkin_id)
            if not lifecycle.is_open(latest):
                # resolved elsewhere while this attempt was being checked
                self._close(user_id, checkin_id)
                raise AlreadyResolved(latest.status)
            raise CodeMismatch(session.attempts_remaining)

    def _exhaust(self, session: ChallengeSession, now: dt.datetime) -> CheckIn:
        try:
            escalated = checkins.escalate_checkin(
                session.user_id, session.checkin_id, now=now, reason=lifecycle.REASON_ATTEMPTS
            )
        except AlreadyResolved:
            self._close(session.user_id, session.checkin_id)
            raise
        self._close(session.user_id, session.checkin_id)
        if escalated.escalation_reason != lifecycle.REASON_ATTEMPTS:
            log.info("check-in %s was escalated (%s) before its attempts ran out", session.checkin_id,
                     escalated.escalation_reason)
            raise AlreadyResolved(escalated.status)
        log.warning("attempts exhausted for %s; status now %s", session.checkin_id, escalated.status)
        raise AttemptsExhausted(escalated)

    def close(self, user_id: str, checkin_id: str) -> None:
        """Drop the session for a check-in the owner cancelled or deleted."""
        self._close(user_id, checkin_id)

    def prune(self) -> int:
        """Drop sessions whose check-in is gone or no longer open. Returns how many."""
        with self._lock:
            keys = list(self._sessions)
        dropped = 0
        for user_id, checkin_id in keys:
            try:
                checkin = checkins.get_checkin(user_id, checkin_id)
            except NotFound:
                checkin = None
            except StoreUnavailable:
                log.warning("could not check session for %s; keeping it", checkin_id)
                continue
            if checkin is None or not lifecycle.is_open(checkin):
                self._close(user_id, checkin_id)
                dropped += 1
        if dropped:
            log.info("pruned %d challenge session(s)", dropped)
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


registry = ChallengeRegistry()
