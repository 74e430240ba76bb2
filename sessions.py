"""In-memory login sessions with expiry, idle timeout and renewal"""
import os, secrets, threading, time, logging

logger = logging.getLogger(__name__)

SESSION_CONFIG = {
    "max_age": int(os.environ.get("SESSION_MAX_AGE", 7 * 24 * 60 * 60)),
    "max_concurrent_sessions": int(os.environ.get("MAX_CONCURRENT_SESSIONS", 5)),
    "inactivity_timeout": int(os.environ.get("SESSION_INACTIVITY_TIMEOUT", 30 * 60)),
    "renewal_threshold": int(os.environ.get("SESSION_RENEWAL_THRESHOLD", 24 * 60 * 60)),
}


class SessionManager:
    """Session store keyed by session id. Times are epoch seconds.

    A clock can be injected for tests; it defaults to time.time.
    """
    def __init__(self, config=None, clock=time.time):
        self.config = dict(SESSION_CONFIG, **(config or {}))
        self._clock = clock
        self._sessions = {}
        self._blacklist = {}  # session id -> blacklisted until
        self._lock = threading.RLock()

    def _expired(self, session, now):
        return (now > session["expires_at"]
                or now - session["last_activity"] > self.config["inactivity_timeout"])

    def create_session(self, user_id, ip_address="", user_agent=""):
        now = self._clock()
        session = {
            "session_id": secrets.token_hex(32),
            "user_id": user_id,
            "created_at": now,
            "last_activity": now,
            "expires_at": now + self.config["max_age"],
            "ip_address": ip_address,
            "user_agent": user_agent or "unknown",
            "renewal_count": 0,
        }
        with self._lock:
            self.cleanup_user_sessions(user_id)
            self._sessions[session["session_id"]] = session
        return dict(session)

    def get_session(self, session_id):
        """Return the live session and touch it, or None."""
        with self._lock:
            session = self._touch(session_id, self._clock())
            return dict(session) if session else None

    def renew_session(self, session_id):
        """Push expiry out again when it is within the renewal threshold."""
        with self._lock:
            now = self._clock()
            session = self._touch(session_id, now)
            if session is None:
                return None
            if session["expires_at"] - now < self.config["renewal_threshold"]:
                session["expires_at"] = now + self.config["max_age"]
                session["renewal_count"] += 1
            return dict(session)

    def _touch(self, session_id, now):
        if not session_id or self._is_blacklisted(session_id, now):
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session, now):
            del self._sessions[session_id]
            return None
        session["last_activity"] = now
        return session

    def invalidate_session(self, session_id):
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                return False
            self._blacklist[session_id] = self._clock() + self.config["max_age"]
            return True

    def invalidate_user_sessions(self, user_id):
        with self._lock:
            ids = [sid for sid, s in self._sessions.items() if s["user_id"] == user_id]
            for sid in ids:
                self.invalidate_session(sid)
        if ids:
            logger.info("Invalidated %d sessions for user %s", len(ids), user_id)
        return len(ids)

    def cleanup_user_sessions(self, user_id):
        """Drop the user's oldest sessions so a new one keeps them within the limit."""
        with self._lock:
            # insertion order is creation order
            mine = [s for s in self._sessions.values() if s["user_id"] == user_id]
            excess = len(mine) - (self.config["max_concurrent_sessions"] - 1)
            for session in mine[:max(excess, 0)]:
                self.invalidate_session(session["session_id"])

    def cleanup_expired_sessions(self):
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
            for sid in expired:
                del self._sessions[sid]
            for sid in [sid for sid, until in self._blacklist.items() if until < now]:
                del self._blacklist[sid]
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    def get_stats(self):
        now = self._clock()
        with self._lock:
            expired = sum(1 for s in self._sessions.values() if self._expired(s, now))
            return {
                "total_sessions": len(self._sessions),
                "active_sessions": len(self._sessions) - expired,
                "expired_sessions": expired,
                "blacklisted_sessions": len(self._blacklist),
            }

    def validate_session_security(self, session_id, ip_address, user_agent=""):
        """Flag a session as suspicious when both the IP and the user agent changed."""
        session = self.get_session(session_id)
        if session is None:
            return {"valid": False, "reason": "Session not found or expired"}
        ip_changed = bool(session["ip_address"]) and session["ip_address"] != ip_address
        agent_changed = session["user_agent"] != (user_agent or "unknown")
        return {
            "valid": True,
            "suspicious": ip_changed and agent_changed,
            "warnings": {"ip_changed": ip_changed, "user_agent_changed": agent_changed},
            "session": session,
        }

    def clear(self):
        with self._lock:
            self._sessions.clear()
            self._blacklist.clear()

    def _is_blacklisted(self, session_id, now):
        until = self._blacklist.get(session_id)
        return until is not None and until >= now
