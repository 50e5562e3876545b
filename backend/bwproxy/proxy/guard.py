"""Loopback guard: stop the proxy from fetching through itself."""
import logging

from bwproxy.config import ProxySettings
from bwproxy.proxy.models import ClientHints

logger = logging.getLogger("bwproxy.guard")

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1"})


def is_loopback_request(client: ClientHints, settings: ProxySettings) -> bool:
    """True when our own Via marker arrives from a loopback address."""
    if client.via != settings.via_marker:
        return False
    if client.forwarded_for not in LOOPBACK_ADDRESSES:
        return False
    logger.debug("Loopback marker %r from %s", client.via, client.forwarded_for)
    return True
