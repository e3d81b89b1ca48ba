"""
Access Control

IP allow-listing and Basic proxy authentication. Both checks are pure
predicates; the gateway decides how to answer, log and record a denial.
"""

import base64
import binascii
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple
import structlog

from mlcproxy.config.settings import Settings
from mlcproxy.domain.value_objects.ip_address import NetworkRange, parse_ip
from mlcproxy.proxy.exceptions import AuthRequired
from mlcproxy.proxy.http_messages import Headers, get_header

logger = structlog.get_logger(__name__)

DEFAULT_REALM = "MLCProxy Access"
BASIC_PREFIX = "Basic "


@dataclass(frozen=True)
class AccessPolicy:
    """
    Immutable access policy shared by all requests.

    An empty network list admits every client. Settings never produce an
    empty list (they fall back to loopback-only), so this only happens when
    a policy is built by hand. Configured entries that failed to parse are
    kept in ``rejected``; a policy whose entries were all rejected admits
    nobody.

    Credentials are compared in plain text; this is not a secure
    credential store.
    """

    networks: Tuple[NetworkRange, ...] = ()
    auth_enabled: bool = False
    credentials: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    realm: str = DEFAULT_REALM
    rejected: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        networks: Iterable[str] = ("127.0.0.1/32",),
        auth_enabled: bool = False,
        credentials: Optional[Mapping[str, str]] = None,
        realm: str = DEFAULT_REALM,
    ) -> "AccessPolicy":
        """
        Create a policy from CIDR strings.

        Invalid CIDR entries are skipped with a warning, keeping the
        remaining networks in configured order.
        """
        parsed = []
        rejected = []
        for cidr in networks:
            try:
                parsed.append(NetworkRange.from_cidr(cidr))
            except ValueError:
                rejected.append(cidr)
                logger.warning("invalid_network_ignored", network=cidr)

        return cls(
            networks=tuple(parsed),
            auth_enabled=auth_enabled,
            credentials=MappingProxyType(dict(credentials or {})),
            realm=realm,
            rejected=tuple(rejected),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessPolicy":
        """Create the policy from loaded settings."""
        return cls.build(
            networks=settings.security.allowed_networks,
            auth_enabled=settings.auth.enable_auth,
            credentials=settings.auth.credentials,
            realm=settings.auth.realm,
        )

    @property
    def network_list(self) -> list[str]:
        return [str(n) for n in self.networks]

    @property
    def allows_everyone(self) -> bool:
        """True only for an explicitly empty allow-list."""
        return not self.networks and not self.rejected


class AccessController:
    """
    Evaluates an AccessPolicy for individual requests.

    Stateless apart from the policy it reads, so one instance serves all
    connections concurrently.
    """

    def __init__(self, policy: AccessPolicy):
        self.policy = policy

    def is_ip_allowed(self, address: str) -> bool:
        """
        Check whether a client address is inside an allowed network.

        Args:
            address: Client address, optionally with port ("10.0.0.1:5000",
                "[::1]:8080")

        Returns:
            True on the first matching network; False if none match or the
            address is not an IP literal
        """
        if self.policy.allows_everyone:
            return True

        ip = parse_ip(address)
        if ip is None:
            logger.warning("client_ip_unparseable", address=address)
            return False

        for network in self.policy.networks:
            if network.contains(ip):
                return True

        return False

    def check_auth(self, headers: Headers) -> bool:
        """
        Validate the Proxy-Authorization header.

        Returns:
            True if auth is disabled or the Basic credentials match a
            configured user exactly. Missing or malformed headers give
            False, never an exception.
        """
        if not self.policy.auth_enabled:
            return True

        credentials = parse_basic_credentials(get_header(headers, "Proxy-Authorization"))
        if credentials is None:
            return False

        username, password = credentials
        stored = self.policy.credentials.get(username)
        return stored is not None and stored == password

    def require_auth(self, message: str = "Proxy authentication required") -> AuthRequired:
        """Build the 407 challenge for the configured realm."""
        return AuthRequired(
            message,
            headers=[("Proxy-Authenticate", f'Basic realm="{self.policy.realm}"')],
        )


def parse_basic_credentials(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Decode a "Basic <base64(user:pass)>" header value.

    Returns:
        (username, password), or None for a missing or malformed value
    """
    if not value or not value.startswith(BASIC_PREFIX):
        return None

    try:
        decoded = base64.b64decode(value[len(BASIC_PREFIX):].strip(), validate=True)
        text = decoded.decode("utf-8")
    except (binascii.Error, ValueError):
        return None

    username, sep, password = text.partition(":")
    if not sep:
        return None
    return username, password
