"""In-memory stand-ins for the resolver and firewall collaborators."""

from typing import Dict, Iterable, List, Optional, Set

from zone_sources import LookupFailed, ResolverBackend
from zone_sync import FirewallController


class FakeBackend(ResolverBackend):
    """In-memory resolver backend: {host: {"A": [...], "AAAA": [...]}}."""

    name = 'fake'

    def __init__(self, records: Optional[Dict[str, Dict[str, List[str]]]] = None,
                 failing: Iterable[tuple] = ()):
        self.records = records or {}
        self.failing = set(failing)
        self.queries: List[tuple] = []

    def lookup(self, host, rdtype):
        self.queries.append((host, rdtype))
        if (host, rdtype) in self.failing:
            raise LookupFailed(f"{rdtype} lookup for {host} timed out")
        return list(self.records.get(host, {}).get(rdtype, []))


class FakeFirewall(FirewallController):
    """firewalld stand-in with separate runtime and permanent source sets."""

    def __init__(self, zones: Dict[str, Iterable[str]], failing: Iterable = ()):
        self.runtime: Dict[str, Set[str]] = {zone: set(sources) for zone, sources in zones.items()}
        self.permanent: Dict[str, Set[str]] = {zone: set(sources) for zone, sources in zones.items()}
        # entries are a source (fails every layer) or a (source, layer) pair
        self.failing = set(failing)
        self.calls: List[tuple] = []
        self.reads: List[tuple] = []

    def _fails(self, source, layer):
        return source in self.failing or (source, layer) in self.failing

    def get_zones(self, events=None):
        self.reads.append(('get_zones',))
        return list(self.runtime)

    def list_sources(self, zone, events=None):
        self.reads.append(('list_sources', zone))
        return sorted(self.runtime[zone])

    def _change(self, action, zone, source, permanent):
        layer = 'permanent' if permanent else 'runtime'
        self.calls.append((action, zone, source, layer))
        if self._fails(source, layer):
            return False
        target = (self.permanent if permanent else self.runtime)[zone]
        if action == 'add':
            target.add(source)
        else:
            target.discard(source)
        return True

    def add_source(self, zone, source, permanent=False, events=None):
        return self._change('add', zone, source, permanent)

    def remove_source(self, zone, source, permanent=False, events=None):
        return self._change('remove', zone, source, permanent)

    def reload(self, events=None):
        self.calls.append(('reload',))
        self.runtime = {zone: set(sources) for zone, sources in self.permanent.items()}
        return True

    @property
    def reloads(self):
        return [call for call in self.calls if call == ('reload',)]
