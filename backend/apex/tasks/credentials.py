"""Clone-token hand-off between the API and Celery workers.

Task arguments are serialized into the broker and show up in task metadata,
so the GitHub token never travels as one. The API stashes it in Redis under
a random reference with a TTL; the worker claims it exactly once:

    ref = stash_token(token)        # API, before task.delay(scan_id, ref)
    token = claim_token(ref)        # worker, first thing in the task

An unclaimed token expires after credential_ref_ttl_seconds.
"""

from __future__ import annotations

import logging
import secrets

import redis

from apex.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "apex:clone-token:"


def _client() -> redis.Redis:
    return redis.from_url(settings.celery_broker_url, socket_timeout=2)


def stash_token(token: str) -> str:
    """Store token for one worker and return its reference ("" for no token)."""
    if not token:
        return ""
    ref = secrets.token_urlsafe(24)
    _client().set(KEY_PREFIX + ref, token, ex=settings.credential_ref_ttl_seconds)
    return ref


def claim_token(ref: str) -> str:
    """Read and delete the token behind ref.

    A missing or expired reference yields "", which still clones public
    repositories; private ones then fail with a clone error.
    """
    if not ref:
        return ""
    with _client().pipeline() as pipe:
        pipe.get(KEY_PREFIX + ref)
        pipe.delete(KEY_PREFIX + ref)
        value, _ = pipe.execute()
    if value is None:
        logger.warning("Clone token reference expired or already claimed")
        return ""
    return value.decode() if isinstance(value, bytes) else value
