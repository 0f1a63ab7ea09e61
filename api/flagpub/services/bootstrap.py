import plistlib
from typing import List

from flagpub.errors import NotFound
from flagpub.models import App, SigningKey

DEFAULT_MIN_INTERVAL_SECONDS = 21600
DEFAULT_HARD_TTL_DAYS = 7
DEFAULT_ALGORITHM = "RS256"


def descriptor(app: App, keys: List[SigningKey]) -> dict:
    """What a client needs before its first fetch: where, which keys, how often."""
    if keys:
        public_keys = [k.distribution_info() for k in keys]
    else:
        public_keys = [
            {"kid": k["kid"], "pem": k["pem"], "algorithm": k.get("algorithm", DEFAULT_ALGORITHM)}
            for k in app.public_keys or [] if k.get("kid")
        ]
    if not public_keys:
        raise NotFound(f"App {app.identifier} has no public keys to distribute")
    policy = app.fetch_policy or {}
    return {
        "endpoint_url": app.artifact_url,
        "public_keys": public_keys,
        "fetch_policy": {
            "min_interval_seconds": int(policy.get("min_interval_seconds", DEFAULT_MIN_INTERVAL_SECONDS)),
            "hard_ttl_days": int(policy.get("hard_ttl_days", DEFAULT_HARD_TTL_DAYS)),
        },
    }


def render_plist(app: App, keys: List[SigningKey]) -> bytes:
    return plistlib.dumps(descriptor(app, keys), fmt=plistlib.FMT_XML, sort_keys=True)
