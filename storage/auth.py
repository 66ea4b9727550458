from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Optional

import requests

from core.events import AUTH_CHANGED, EventBus
from core.exceptions import AuthError

logger = logging.getLogger(__name__)


class AuthSession:
    """Holds the bearer credential of the signed-in user.

    Only password login is supported; sign-up, refresh and password reset stay
    with the backend's own tooling.
    """
    def __init__(self, base_url: str, api_key: str = "", bus: Optional[EventBus] = None,
                 session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bus = bus
        self.session = session or requests.Session()
        if api_key:
            self.session.headers.update({"apikey": api_key})
        self.timeout = timeout
        self.token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.user_id: Optional[str] = None
        self.email: Optional[str] = None

    # ---------- state ----------
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user_id)

    def current_user_id(self) -> Optional[str]:
        return self.user_id if self.is_authenticated() else None

    def bearer_token(self) -> Optional[str]:
        return self.token

    def _changed(self):
        if self.bus:
            self.bus.publish(AUTH_CHANGED, self.current_user_id())

    # ---------- auth ----------
    def login(self, email: str, password: str) -> bool:
        url = f"{self.base_url}/auth/v1/token"
        try:
            r = self.session.post(url, params={"grant_type": "password"},
                                  json={"email": email, "password": password}, timeout=self.timeout)
        except requests.RequestException as e:
            raise AuthError(f"Login failed: {e}") from e
        if not r.ok:
            raise AuthError(f"Login failed: {r.status_code} {r.text}", r.status_code)
        data = r.json()
        token = data.get("access_token")
        user = data.get("user") or {}
        if not token or not user.get("id"):
            raise AuthError("Missing token or user id in login response")
        self.token = token
        self.refresh_token = data.get("refresh_token")
        self.user_id = user["id"]
        self.email = user.get("email") or email
        logger.info("signed in as %s", self.email)
        self._changed()
        return True

    def adopt(self, user_id: str, token: str, email: Optional[str] = None):
        """Use a credential obtained elsewhere (restored session, tests)."""
        self.user_id = user_id
        self.token = token
        self.email = email
        self._changed()

    def logout(self):
        self.token = None
        self.refresh_token = None
        self.user_id = None
        self.email = None
        self._changed()

    # ---------- session file ----------
    def save(self, path) -> bool:
        data = {"accessToken": self.token, "refreshToken": self.refresh_token,
                "userId": self.user_id, "email": self.email}
        try:
            Path(path).write_text(json.dumps(data), encoding="utf-8")
            return True
        except OSError as e:
            logger.warning("could not save session: %s", e)
            return False

    def restore(self, path) -> bool:
        path = Path(path)
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("discarding unreadable session file: %s", e)
            return False
        if not isinstance(data, dict) or not data.get("accessToken") or not data.get("userId"):
            return False
        self.refresh_token = data.get("refreshToken")
        self.adopt(data["userId"], data["accessToken"], data.get("email"))
        return True

    @staticmethod
    def forget(path):
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not delete session file: %s", e)
