import json
import time
import threading
from typing import Dict, List, Optional

import jwt
import requests


class VerificationError(Exception):
    pass


class FFClient:
    """Fetches the signed configuration artifact and verifies it before use.

    ``public_keys`` is the ``[{kid, pem, algorithm}]`` list from the bootstrap
    descriptor or ``GET /keys/public``; entries without an algorithm are
    RS256. A fetched artifact is reused for ``min_interval`` seconds; if
    refreshing fails the last good artifact is served until it is
    ``hard_ttl`` seconds old.
    """

    def __init__(self, artifact_url: str, public_keys: List[dict], timeout: float = 2.0,
                 min_interval: float = 21600.0, hard_ttl: float = 7 * 86400.0):
        self.artifact_url = artifact_url
        self.timeout = timeout
        self.min_interval = min_interval
        self.hard_ttl = hard_ttl
        self._keys: Dict[str, dict] = {k["kid"]: k for k in public_keys}
        self._lock = threading.Lock()
        self._artifact: Optional[dict] = None
        self._fetched_at = 0.0

    @classmethod
    def from_api(cls, api_url: str, app_identifier: str, artifact_url: str, timeout: float = 2.0, **kwargs):
        r = requests.get(f"{api_url.rstrip('/')}/keys/public",
                         params={"app_identifier": app_identifier}, timeout=timeout)
        r.raise_for_status()
        return cls(artifact_url, r.json(), timeout=timeout, **kwargs)

    def verify(self, envelope: str) -> dict:
        try:
            kid = jwt.api_jws.get_unverified_header(envelope).get("kid")
        except jwt.exceptions.PyJWTError as exc:
            raise VerificationError(f"malformed envelope: {exc}") from exc
        key = self._keys.get(kid)
        if key is None:
            raise VerificationError(f"unknown signing key {kid}")
        try:
            payload = jwt.api_jws.decode(envelope, key["pem"], algorithms=[key.get("algorithm", "RS256")])
        except jwt.exceptions.PyJWTError as exc:
            raise VerificationError(f"bad signature for key {kid}: {exc}") from exc
        return json.loads(payload)

    def _download(self) -> dict:
        r = requests.get(self.artifact_url, timeout=self.timeout)
        r.raise_for_status()
        return self.verify(r.text.strip())

    def artifact(self) -> Optional[dict]:
        now = time.time()
        with self._lock:
            if self._artifact is not None and now - self._fetched_at < self.min_interval:
                return self._artifact
            try:
                self._artifact = self._download()
                self._fetched_at = now
            except (requests.RequestException, VerificationError):
                if self._artifact is None or now - self._fetched_at >= self.hard_ttl:
                    self._artifact = None
                    raise
            return self._artifact

    def variants(self, flag_key: str, environment: str) -> Optional[dict]:
        """The compiled ``{default, variants}`` entry for a flag, or None if unknown."""
        data = self.artifact() or {}
        flag = data.get("flags", {}).get(flag_key)
        return flag.get(environment) if flag else None
