from __future__ import annotations

import httpx

from .api_models import NodeState
from .db import log_event


def register_with_master(master_url: str, state: NodeState, timeout_s: float = 10.0) -> tuple[bool, str]:
    """Advertise this node's capacity to the master.

    POSTs the node state to ``<master_url>/nodes``.
    Returns (registered, message); transport failures are reported, not raised.
    """
    url = f"{master_url.rstrip('/')}/nodes"
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.post(url, json=state.model_dump())
    except (httpx.ConnectError, httpx.TimeoutException):
        log_event("WARN", f"Master at {url} did not respond")
        return False, "No response"
    except httpx.HTTPError as e:
        log_event("WARN", f"Registration with {url} failed: {type(e).__name__}: {e}")
        return False, f"Error: {type(e).__name__}: {e}"

    if resp.status_code not in (200, 201):
        log_event("WARN", f"Master at {url} rejected registration: HTTP {resp.status_code}")
        return False, f"HTTP {resp.status_code}"
    log_event("INFO", f"Registered with master at {url}")
    return True, "Registered"
