from __future__ import annotations
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from core.exceptions import AuthError, RemoteError, TransientRemoteError
from core.models import Snapshot, utcnow
from storage.auth import AuthSession

logger = logging.getLogger(__name__)


class RemoteRecordClient:
    """One JSON blob per user in the `user_data` table, upserted by user id."""
    TABLE = "user_data"

    def __init__(self, base_url: str, auth: AuthSession, api_key: str = "", timeout: float = 30.0,
                 attempts: int = 3, backoff: float = 1.0, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.session = session or requests.Session()
        if api_key:
            self.session.headers.update({"apikey": api_key})
        self._sleep = sleep

    @property
    def records_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.TABLE}"

    # ---------- transport ----------
    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        token = self.auth.bearer_token()
        if not token:
            raise AuthError("Not signed in")
        headers = {"Authorization": f"Bearer {token}"}
        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, url: str, attempts: Optional[int] = None, timeout: Optional[float] = None,
              headers: Optional[Dict[str, str]] = None, **kwargs) -> requests.Response:
        """Send with retries on transport failures and 5xx/429; linear backoff between tries."""
        attempts = max(1, attempts or self.attempts)
        last_error: Optional[RemoteError] = None
        for attempt in range(1, attempts + 1):
            try:
                r = self.session.request(method, url, headers=self._headers(headers),
                                         timeout=timeout or self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = TransientRemoteError(f"{method} {url}: {e}")
            except requests.RequestException as e:
                raise RemoteError(f"{method} {url}: {e}") from e
            else:
                if r.status_code in (401, 403):
                    raise AuthError(f"{method} {url}: {r.status_code} {r.text}", r.status_code)
                if r.status_code >= 500 or r.status_code == 429:
                    last_error = TransientRemoteError(f"{method} {url}: {r.status_code} {r.text}",
                                                      r.status_code)
                elif not r.ok:
                    raise RemoteError(f"{method} {url}: {r.status_code} {r.text}", r.status_code)
                else:
                    return r
            if attempt < attempts:
                delay = self.backoff * attempt
                logger.info("%s (attempt %d/%d), retrying in %.1fs", last_error, attempt, attempts, delay)
                self._sleep(delay)
        raise last_error

    # ---------- records ----------
    def fetch(self, user_id: str) -> Optional[Snapshot]:
        """The user's remote snapshot, or None.

        None covers "no record yet" as well as network failures and unreadable
        payloads: callers continue as if the remote were empty. Only AuthError
        is raised.
        """
        try:
            r = self._send("GET", self.records_url, params={"user_id": f"eq.{user_id}", "select": "*"})
        except AuthError:
            raise
        except RemoteError as e:
            logger.warning("remote fetch failed, continuing local-only: %s", e)
            return None
        return self._decode(r)

    def _decode(self, r: requests.Response) -> Optional[Snapshot]:
        try:
            records = r.json()
        except ValueError as e:
            logger.warning("remote answered with invalid JSON: %s", e)
            return None
        if not isinstance(records, list) or not records or not isinstance(records[0], dict):
            return None
        data: Any = records[0].get("data")
        if not data:
            return None
        try:
            if isinstance(data, str):
                data = json.loads(data)
            return Snapshot.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("ignoring malformed remote snapshot: %s", e)
            return None

    def upsert(self, user_id: str, snapshot: Snapshot, attempts: Optional[int] = None,
               timeout: Optional[float] = None):
        """Replace the user's whole blob (insert when absent)."""
        if not user_id:
            raise RemoteError("upsert without a user id")
        payload = snapshot.to_dict()
        payload["userId"] = user_id
        record = {
            "user_id": user_id,
            "data": json.dumps(payload, ensure_ascii=False),
            "updated_at": utcnow().isoformat(),
        }
        self._send("POST", self.records_url, attempts=attempts, timeout=timeout,
                   headers={"Prefer": "resolution=merge-duplicates"},
                   params={"on_conflict": "user_id"}, json=record)
