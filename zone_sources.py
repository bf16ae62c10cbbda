"""
Zone source helpers

Turns host tokens from the command line or a zone config file into the
canonical CIDR sources a firewalld zone is compared against. DNS answers
come from one of several resolver backends (DNS-over-HTTPS, dnspython or
getent), whichever is usable on the host.
"""

import ipaddress
import logging
import re
import shutil
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

import dns.exception
import dns.resolver
import requests

from zone_events import ZoneEventLogger, get_event_logger

SECTION_RE = re.compile(r'^\[(.*)\]$')


class ZoneSyncError(Exception):
    """Base exception for zone synchronization errors."""
    pass


class ConfigError(ZoneSyncError):
    """Exception raised when a zone config or host list cannot be read."""
    pass


class ToolingUnavailable(ZoneSyncError):
    """Exception raised when no DNS resolution mechanism is usable."""
    pass


class LookupFailed(ZoneSyncError):
    """Exception raised when a single A/AAAA lookup fails in transport."""
    pass


@dataclass(frozen=True)
class HostEntry:
    """A hostname assigned to a zone, with the token it was taken from."""

    host: str
    zone: str
    raw: Optional[str] = None


def extract_host(token: str) -> str:
    """
    Reduce a URL-like token to its bare hostname.

    Strips, in this order: the scheme up to "://", the path from the first
    "/", the port from the first ":" and the userinfo up to the last "@".
    An empty result means the token is malformed.
    """
    host = token.strip()
    if '://' in host:
        host = host.split('://', 1)[1]
    host = host.split('/', 1)[0]
    host = host.split(':', 1)[0]
    host = host.rsplit('@', 1)[-1]
    return host


def ip_to_source(ip: str) -> str:
    """Return the host route for a resolved address (/128 for IPv6, /32 otherwise)."""
    if ':' in ip:
        return f"{ip}/128"
    return f"{ip}/32"


def normalize_current_source(entry: str) -> str:
    """
    Normalize one source as listed by the firewall.

    Entries that already carry a prefix length are kept as-is, so manually
    configured networks are never rewritten. Bare addresses become host
    routes; anything else (ipset references, MAC sources) is kept verbatim.
    """
    if '/' in entry:
        return entry
    try:
        ipaddress.ip_address(entry)
    except ValueError:
        return entry
    return ip_to_source(entry)


def _clean_line(line: str) -> str:
    return line.split('#', 1)[0].strip()


def parse_zone_config(text: str, events: Optional[ZoneEventLogger] = None) -> Dict[str, List[str]]:
    """
    Parse a sectioned zone config.

    A "[zone]" line opens a section; every following non-empty line up to
    the next section is a host token for that zone. "#" starts a comment.
    Sections keep their file order and a repeated section extends the
    earlier one.

    Args:
        text: Config file contents
        events: Event logger used to report host lines outside any section

    Returns:
        Mapping of zone name to its host tokens
    """
    events = events or get_event_logger()
    zones: Dict[str, List[str]] = {}
    current: Optional[str] = None

    for line_num, raw_line in enumerate(text.splitlines(), 1):
        line = _clean_line(raw_line)
        if not line:
            continue

        match = SECTION_RE.match(line)
        if match:
            current = match.group(1).strip() or None
            if current is None:
                events.record(logging.WARNING, "Empty zone section ignored", line=line_num)
            else:
                zones.setdefault(current, [])
            continue

        if current is None:
            events.record(logging.WARNING, "Host outside of any zone section ignored",
                          line=line_num, raw=line)
            continue
        zones[current].append(line)

    return zones


def parse_host_list(text: str) -> List[str]:
    """Parse a plain host list: one token per line, "#" comments allowed."""
    return [line for line in (_clean_line(raw) for raw in text.splitlines()) if line]


def _read_text(path: Union[str, Path]) -> str:
    try:
        return Path(path).read_text(encoding='utf-8')
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e


def load_zone_config(path: Union[str, Path], events: Optional[ZoneEventLogger] = None) -> Dict[str, List[str]]:
    return parse_zone_config(_read_text(path), events)


def load_host_list(path: Union[str, Path]) -> List[str]:
    return parse_host_list(_read_text(path))


class ResolverBackend:
    """Interface for a mechanism answering A and AAAA queries."""

    name = 'backend'

    def lookup(self, host: str, rdtype: str) -> List[str]:
        """
        Look up one record type for a host.

        Returns:
            Raw answer strings; empty when the name or the type does not exist

        Raises:
            LookupFailed: If the query could not be answered at all
        """
        raise NotImplementedError

    def close(self) -> None:
        pass


class DnsPythonBackend(ResolverBackend):
    """Stub resolver queries through dnspython."""

    name = 'dnspython'

    def __init__(self, nameservers: Optional[Sequence[str]] = None, timeout: float = 5.0):
        if nameservers:
            self.resolver = dns.resolver.Resolver(configure=False)
            self.resolver.nameservers = list(nameservers)
        else:
            # raises NoResolverConfiguration without a usable resolv.conf
            self.resolver = dns.resolver.Resolver()
        self.resolver.timeout = timeout
        self.resolver.lifetime = timeout * 2

    def lookup(self, host: str, rdtype: str) -> List[str]:
        try:
            answers = self.resolver.resolve(host, rdtype)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.exception.DNSException as e:
            raise LookupFailed(f"{rdtype} lookup for {host} failed: {e}") from e
        return [rdata.to_text() for rdata in answers]


class DohBackend(ResolverBackend):
    """DNS-over-HTTPS queries against a resolver speaking the JSON API."""

    name = 'doh'
    RECORD_TYPES = {'A': 1, 'AAAA': 28}
    NXDOMAIN = 3

    def __init__(self, url: str, timeout: float = 10, session: Optional[requests.Session] = None,
                 user_agent: str = 'fw-zone-sync/1.0'):
        self.url = url
        self.timeout = timeout
        self.session = session or self._create_session(user_agent)

    def _create_session(self, user_agent: str) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'application/dns-json',
        })
        return session

    def lookup(self, host: str, rdtype: str) -> List[str]:
        try:
            response = self.session.get(
                self.url,
                params={'name': host, 'type': rdtype},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise LookupFailed(f"{rdtype} lookup for {host} via {self.url} failed: {e}") from e

        status = data.get('Status', 0)
        if status == self.NXDOMAIN:
            return []
        if status != 0:
            raise LookupFailed(f"{rdtype} lookup for {host} returned DNS status {status}")

        wanted = self.RECORD_TYPES[rdtype]
        return [
            answer['data'] for answer in data.get('Answer') or []
            if answer.get('type') == wanted and 'data' in answer
        ]

    def close(self) -> None:
        self.session.close()


class GetentBackend(ResolverBackend):
    """System resolver (NSS) queries through getent, one family per call."""

    name = 'getent'
    DATABASES = {'A': 'ahostsv4', 'AAAA': 'ahostsv6'}
    NOT_FOUND = 2

    def __init__(self, binary: str = 'getent', timeout: float = 10):
        self.binary = binary
        self.timeout = timeout

    def lookup(self, host: str, rdtype: str) -> List[str]:
        command = [self.binary, self.DATABASES[rdtype], host]
        try:
            result = subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=False,
                timeout=self.timeout,
                capture_output=True,
                text=True,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise LookupFailed(f"{rdtype} lookup for {host} via getent failed: {e}") from e

        if result.returncode == self.NOT_FOUND:
            return []
        if result.returncode != 0:
            raise LookupFailed(
                f"getent {self.DATABASES[rdtype]} {host} exited with {result.returncode}: {result.stderr.strip()}"
            )
        return [line.split()[0] for line in result.stdout.splitlines() if line.strip()]


def _canonical_addresses(answers: Iterable[str], version: int) -> Set[str]:
    """Keep well-formed addresses of one family, in compressed text form."""
    addresses = set()
    for answer in answers:
        try:
            address = ipaddress.ip_address(answer.strip())
        except ValueError:
            # CNAME targets and other non-address answers
            continue
        if address.version != version:
            continue
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            continue
        addresses.add(str(address))
    return addresses


class NameResolver:
    """Resolve hostnames to the deduplicated set of their IPv4 and IPv6 addresses."""

    FAMILIES = (('A', 4), ('AAAA', 6))

    def __init__(self, backend: ResolverBackend):
        self.backend = backend

    @classmethod
    def from_config(cls, doh_url: Optional[str] = None, nameservers: Optional[Sequence[str]] = None,
                    dns_timeout: float = 5.0, doh_timeout: float = 10, getent_binary: str = 'getent',
                    user_agent: str = 'fw-zone-sync/1.0') -> 'NameResolver':
        """
        Pick the first usable resolution mechanism.

        DNS-over-HTTPS is used only when a URL is configured; otherwise
        dnspython, then getent.

        Raises:
            ToolingUnavailable: If none of the mechanisms can be used
        """
        if doh_url:
            return cls(DohBackend(doh_url, timeout=doh_timeout, user_agent=user_agent))

        try:
            return cls(DnsPythonBackend(nameservers, timeout=dns_timeout))
        except dns.resolver.NoResolverConfiguration as e:
            get_event_logger().record(logging.DEBUG, "dnspython has no resolver configuration", error=str(e))

        getent = shutil.which(getent_binary)
        if getent:
            return cls(GetentBackend(getent, timeout=dns_timeout * 2))

        raise ToolingUnavailable(
            "No DNS resolution mechanism available: no resolver configuration for dnspython "
            f"and '{getent_binary}' not found"
        )

    def resolve(self, host: str, events: Optional[ZoneEventLogger] = None) -> Set[str]:
        """
        Resolve both address families of a host independently.

        Args:
            host: Bare hostname
            events: Zone event logger for lookup warnings

        Returns:
            Set of address strings; empty when neither family has records
        """
        events = events or get_event_logger()
        addresses: Set[str] = set()

        for rdtype, version in self.FAMILIES:
            try:
                answers = self.backend.lookup(host, rdtype)
            except LookupFailed as e:
                events.record(logging.WARNING, "DNS lookup failed", host=host, family=rdtype, error=str(e))
                continue
            found = _canonical_addresses(answers, version)
            if not found:
                events.record(logging.DEBUG, "No records for address family", host=host, family=rdtype)
            addresses.update(found)

        return addresses

    def close(self) -> None:
        self.backend.close()
