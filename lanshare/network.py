import hashlib
import logging
import time
from typing import Mapping, Optional

from . import storage
from .lifecycle import ACTIVE_SESSION_SECONDS

FALLBACK_CLIENT_ADDRESS = "127.0.0.1"
_IPV4_MAPPED_PREFIX = "::ffff:"

logger = logging.getLogger("lanshare.network")


def _is_ipv4_shaped(address: str) -> bool:
    parts = address.split(".")
    return len(parts) == 4 and all(part.isascii() and part.isdigit() for part in parts)


def derive_network_base(address: str) -> str:
    """Return the subnet string that peers on the same LAN share.

    IPv4 addresses group by their first three octets. Anything else drops the
    trailing ``:`` segment, or is used whole when no separator remains.
    """

    address = (address or "").strip()
    lowered = address.lower()
    if lowered.startswith(_IPV4_MAPPED_PREFIX) and _is_ipv4_shaped(address[len(_IPV4_MAPPED_PREFIX):]):
        address = address[len(_IPV4_MAPPED_PREFIX):]

    if _is_ipv4_shaped(address):
        return ".".join(address.split(".")[:3])

    head, _, _ = address.rpartition(":")
    return head or address


def derive_network_id(address: str) -> str:
    base = derive_network_base(address)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def client_address_from_request(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    *,
    trust_proxy_headers: bool = True,
) -> str:
    """Pick the apparent client address, honouring proxy headers if trusted."""

    if trust_proxy_headers:
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = (headers.get("X-Real-IP") or "").strip()
        if real_ip:
            return real_ip
    return remote_addr or FALLBACK_CLIENT_ADDRESS


class NetworkIdentity:
    def __init__(self, network_id: str, client_address: str, connected_users: int, timestamp: float) -> None:
        self.network_id = network_id
        self.client_address = client_address
        self.connected_users = connected_users
        self.timestamp = timestamp

    def to_payload(self) -> dict:
        return {
            "networkId": self.network_id,
            "connectedUsers": self.connected_users,
            "clientIp": self.client_address,
            "timestamp": storage.isoformat_utc(self.timestamp),
        }


def resolve_network(
    client_address: str,
    user_agent: Optional[str] = None,
    *,
    now: Optional[float] = None,
) -> NetworkIdentity:
    """Derive the network id for *client_address* and record its presence."""

    now = time.time() if now is None else now
    network_id = derive_network_id(client_address)
    cutoff = now - ACTIVE_SESSION_SECONDS

    storage.upsert_session(network_id, client_address, now, user_agent)
    reclaimed = storage.delete_sessions_seen_before(cutoff)
    connected_users = storage.count_sessions_seen_after(network_id, cutoff)

    logger.debug(
        "network_resolved network_id=%s connected_users=%d reclaimed_sessions=%d",
        network_id[:12],
        connected_users,
        reclaimed,
    )
    return NetworkIdentity(network_id, client_address, connected_users, now)


def active_users(network_id: str, now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    return storage.count_sessions_seen_after(network_id, now - ACTIVE_SESSION_SECONDS)
