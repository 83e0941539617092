"""Content signature for a remote schedule.

The signature captures everything that changes the payload Braze would send
(send instant, audience membership, rendered text). Two payloads with equal
signatures are interchangeable; the scheduler never compares anything else.
"""

import hashlib
import json
from datetime import datetime
from typing import Iterable, Optional

from kickoff.utils.dates import isoformat_z


def compute_signature(
    send_at: datetime,
    audience_keys: Iterable[str],
    *localized_text: Optional[str],
) -> str:
    """
    Deterministic SHA256 signature of a schedule's content.

    Audience keys are de-duplicated and sorted, so their order never matters.
    Text parts are positional (home, away, competition, ...). The tuple is
    JSON-encoded before hashing so separators inside names can't collide.

    Args:
        send_at: Target send instant (naive UTC).
        audience_keys: Remote audience attribute values.
        *localized_text: Rendered text parts, in a fixed order.

    Returns:
        64-char hex digest.
    """
    raw = json.dumps(
        [isoformat_z(send_at), sorted(set(audience_keys)), list(localized_text)],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
