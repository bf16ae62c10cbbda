#!/usr/bin/python3
"""
Firewalld Zone Sync

This module keeps the source allow-list of firewalld zones in line with the
current DNS addresses of a set of hostnames (dynamic DNS). Each zone's
desired sources are diffed against its live sources and the difference is
applied to both the runtime and the permanent configuration, or only
reported in dry-run mode. Every decision is written to a JSON lines log.
"""

import argparse
import logging
import os
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from zone_events import ZoneEventLogger, get_event_logger, setup_event_log
from zone_sources import (
    ConfigError,
    HostEntry,
    NameResolver,
    ToolingUnavailable,
    ZoneSyncError,
    extract_host,
    ip_to_source,
    load_host_list,
    load_zone_config,
    normalize_current_source,
)


class ZoneSyncConfig:
    """Configuration constants for the zone synchronizer."""

    # File paths
    LOG_FILE = '/var/log/fw-zone-sync.jsonl'

    # External tools
    FIREWALL_CMD = 'firewall-cmd'
    GETENT_CMD = 'getent'

    # Timeouts
    FIREWALL_TIMEOUT = 30
    DNS_TIMEOUT = 5.0
    DOH_TIMEOUT = 10

    USER_AGENT = 'fw-zone-sync/1.0'

    def __init__(self):
        self.log_file = os.getenv('FW_ZONE_SYNC_LOG_FILE') or self.LOG_FILE
        self.firewall_cmd = os.getenv('FW_ZONE_SYNC_FIREWALL_CMD') or self.FIREWALL_CMD
        self.doh_url = os.getenv('FW_ZONE_SYNC_DOH_URL') or None
        nameservers = os.getenv('FW_ZONE_SYNC_NAMESERVERS') or ''
        self.nameservers = [ns.strip() for ns in nameservers.split(',') if ns.strip()]


class FirewallError(ZoneSyncError):
    """Exception raised when the firewall cannot be queried."""
    pass


class ZoneNotFound(ZoneSyncError):
    """Exception raised when a zone is not known to the firewall."""
    pass


class Layer(Enum):
    RUNTIME = 'runtime'
    PERMANENT = 'permanent'


class ZoneState(Enum):
    VALIDATE = 'validate'
    BUILD_DESIRED = 'build_desired'
    READ_CURRENT = 'read_current'
    DIFF = 'diff'
    NO_OP = 'no_op'
    DRY_RUN_REPORT = 'dry_run_report'
    APPLY = 'apply'
    RELOAD = 'reload'


class ZoneOutcome(Enum):
    DONE = 'done'
    FAILED = 'failed'
    ABORTED = 'aborted'


@dataclass(frozen=True)
class DiffResult:
    """Sources to add to and remove from a zone."""

    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()

    @classmethod
    def compute(cls, desired: Iterable[str], current: Iterable[str]) -> 'DiffResult':
        desired, current = frozenset(desired), frozenset(current)
        return cls(added=desired - current, removed=current - desired)

    @property
    def unchanged(self) -> bool:
        return not self.added and not self.removed

    def apply_to(self, current: Iterable[str]) -> FrozenSet[str]:
        return (frozenset(current) | self.added) - self.removed


@dataclass(frozen=True)
class ApplyOutcome:
    source: str
    operation: str
    layer: Layer
    succeeded: bool


@dataclass
class ZoneResult:
    """What happened to one zone during a run."""

    zone: str
    outcome: ZoneOutcome = ZoneOutcome.DONE
    state: ZoneState = ZoneState.VALIDATE
    diff: Optional[DiffResult] = None
    applied: List[ApplyOutcome] = field(default_factory=list)
    reloaded: bool = False
    reload_failed: bool = False

    @property
    def failures(self) -> List[ApplyOutcome]:
        return [outcome for outcome in self.applied if not outcome.succeeded]

    @property
    def permanent_changed(self) -> bool:
        return any(o.succeeded and o.layer is Layer.PERMANENT for o in self.applied)


@dataclass
class RunSummary:
    results: List[ZoneResult] = field(default_factory=list)

    def zones_with(self, outcome: ZoneOutcome) -> List[str]:
        return [result.zone for result in self.results if result.outcome is outcome]


class FirewallController:
    """
    Interface to the firewall control plane that owns the zones.

    Every operation takes the event logger of the zone it runs for, so
    diagnostics from the firewall carry that zone.
    """

    def get_zones(self, events: Optional[ZoneEventLogger] = None) -> List[str]:
        raise NotImplementedError

    def list_sources(self, zone: str, events: Optional[ZoneEventLogger] = None) -> List[str]:
        raise NotImplementedError

    def add_source(self, zone: str, source: str, permanent: bool = False,
                   events: Optional[ZoneEventLogger] = None) -> bool:
        raise NotImplementedError

    def remove_source(self, zone: str, source: str, permanent: bool = False,
                      events: Optional[ZoneEventLogger] = None) -> bool:
        raise NotImplementedError

    def reload(self, events: Optional[ZoneEventLogger] = None) -> bool:
        raise NotImplementedError


class FirewallCmd(FirewallController):
    """firewalld control through the firewall-cmd client."""

    def __init__(self, binary: str = ZoneSyncConfig.FIREWALL_CMD, timeout: int = ZoneSyncConfig.FIREWALL_TIMEOUT,
                 events: Optional[ZoneEventLogger] = None):
        self.binary = binary
        self.timeout = timeout
        self.events = events or get_event_logger()

    def _run(self, args: Sequence[str], events: ZoneEventLogger) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        events.record(logging.DEBUG, "Running firewall command", command=' '.join(command))
        return subprocess.run(  # nosec B603 - controlled input, no shell
            command,
            check=False,
            timeout=self.timeout,
            capture_output=True,
            text=True,
        )

    def _query(self, args: Sequence[str], events: Optional[ZoneEventLogger] = None) -> str:
        try:
            result = self._run(args, events or self.events)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FirewallError(f"{self.binary} {' '.join(args)} failed: {e}") from e
        if result.returncode != 0:
            raise FirewallError(
                f"{self.binary} {' '.join(args)} exited with {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout

    def _change(self, args: Sequence[str], events: Optional[ZoneEventLogger] = None) -> bool:
        events = events or self.events
        try:
            result = self._run(args, events)
        except (OSError, subprocess.TimeoutExpired) as e:
            events.record(logging.DEBUG, "Firewall command failed", command=' '.join(args), error=str(e))
            return False
        if result.returncode != 0:
            events.record(logging.DEBUG, "Firewall command failed", command=' '.join(args),
                          returncode=result.returncode, error=result.stderr.strip())
            return False
        return True

    @staticmethod
    def _source_args(zone: str, action: str, source: str, permanent: bool) -> List[str]:
        args = [f'--zone={zone}', f'--{action}-source={source}']
        if permanent:
            args.insert(0, '--permanent')
        return args

    def get_zones(self, events: Optional[ZoneEventLogger] = None) -> List[str]:
        return self._query(['--get-zones'], events).split()

    def list_sources(self, zone: str, events: Optional[ZoneEventLogger] = None) -> List[str]:
        return self._query([f'--zone={zone}', '--list-sources'], events).split()

    def add_source(self, zone: str, source: str, permanent: bool = False,
                   events: Optional[ZoneEventLogger] = None) -> bool:
        return self._change(self._source_args(zone, 'add', source, permanent), events)

    def remove_source(self, zone: str, source: str, permanent: bool = False,
                      events: Optional[ZoneEventLogger] = None) -> bool:
        return self._change(self._source_args(zone, 'remove', source, permanent), events)

    def reload(self, events: Optional[ZoneEventLogger] = None) -> bool:
        return self._change(['--reload'], events)


class ZoneReconciler:
    """Bring one zone's sources in line with the addresses of its hosts."""

    def __init__(self, firewall: FirewallController, resolver: NameResolver, dry_run: bool = False,
                 events: Optional[ZoneEventLogger] = None):
        self.firewall = firewall
        self.resolver = resolver
        self.dry_run = dry_run
        self.events = events or get_event_logger()

    def build_desired(self, zone: str, tokens: Sequence[str],
                      events: ZoneEventLogger) -> Tuple[Set[str], List[Dict[str, str]]]:
        """
        Resolve the host tokens of a zone into host-route sources.

        Malformed tokens and hosts without records are reported and
        skipped; they never stop the remaining hosts.

        Returns:
            Tuple of (desired sources, host to source provenance)
        """
        desired: Set[str] = set()
        host_ips: List[Dict[str, str]] = []

        for token in tokens:
            entry = HostEntry(host=extract_host(token), zone=zone, raw=token)
            if not entry.host:
                events.record(logging.WARNING, "Could not parse host", raw=entry.raw)
                continue

            addresses = self.resolver.resolve(entry.host, events)
            if not addresses:
                events.record(logging.WARNING, "No IPs resolved for host", host=entry.host)
                continue

            for address in sorted(addresses):
                source = ip_to_source(address)
                desired.add(source)
                host_ips.append({'host': entry.host, 'ip': source})
                events.record(logging.DEBUG, "Resolved host", host=entry.host, ip=source)

        return desired, host_ips

    def read_current(self, zone: str, events: Optional[ZoneEventLogger] = None) -> Set[str]:
        entries = self.firewall.list_sources(zone, events=events or self.events.for_zone(zone))
        return {normalize_current_source(entry) for entry in entries}

    def reconcile(self, zone: str, tokens: Sequence[str]) -> ZoneResult:
        """
        Run validate, build, read, diff and apply (or report) for one zone.

        Args:
            zone: firewalld zone name
            tokens: Host tokens (bare hostnames or URLs) assigned to the zone

        Returns:
            The zone's result. A missing or unreadable zone is reported as
            ABORTED; ToolingUnavailable and unexpected errors propagate.
        """
        events = self.events.for_zone(zone)
        result = ZoneResult(zone=zone)
        events.record(logging.INFO, "Starting sync for zone", urls_count=len(tokens))

        try:
            self._validate(zone, events)
        except ZoneNotFound:
            events.record(logging.ERROR, "Zone not found")
            return self._finish(result, ZoneOutcome.ABORTED, events)
        except FirewallError as e:
            events.record(logging.ERROR, "Could not read zone", error=str(e))
            return self._finish(result, ZoneOutcome.ABORTED, events)

        result.state = ZoneState.BUILD_DESIRED
        desired, host_ips = self.build_desired(zone, tokens, events)

        result.state = ZoneState.READ_CURRENT
        try:
            current = self.read_current(zone, events)
        except FirewallError as e:
            events.record(logging.ERROR, "Could not read zone", error=str(e))
            return self._finish(result, ZoneOutcome.ABORTED, events)

        result.state = ZoneState.DIFF
        diff = DiffResult.compute(desired, current)
        result.diff = diff
        if diff.unchanged:
            result.state = ZoneState.NO_OP
            events.record(logging.INFO, "No changes detected")
            return self._finish(result, ZoneOutcome.DONE, events)

        added, removed = sorted(diff.added), sorted(diff.removed)
        events.record(logging.INFO, "Detected changes", add_count=len(added), remove_count=len(removed))

        if self.dry_run:
            result.state = ZoneState.DRY_RUN_REPORT
            events.record(logging.INFO, "Dry-run: IPs that would be added/removed",
                          added_ips=added, removed_ips=removed, host_ips=host_ips)
            return self._finish(result, ZoneOutcome.DONE, events)

        result.state = ZoneState.APPLY
        self._apply(zone, 'add', added, result, events)
        if added:
            events.record(logging.INFO, "Added IPs to zone", added_ips=added, host_ips=host_ips)
        self._apply(zone, 'remove', removed, result, events)
        if removed:
            events.record(logging.INFO, "Removed IPs from zone", removed_ips=removed, host_ips=host_ips)

        if result.permanent_changed:
            result.state = ZoneState.RELOAD
            if self.firewall.reload(events=events):
                result.reloaded = True
                events.record(logging.INFO, "Firewalld reloaded")
            else:
                result.reload_failed = True
                events.record(logging.WARNING, "Firewalld reload failed")

        outcome = ZoneOutcome.FAILED if result.failures or result.reload_failed else ZoneOutcome.DONE
        return self._finish(result, outcome, events)

    def _validate(self, zone: str, events: ZoneEventLogger) -> None:
        if zone not in self.firewall.get_zones(events=events):
            raise ZoneNotFound(f"Zone not found: {zone}")

    def _apply(self, zone: str, operation: str, sources: Sequence[str], result: ZoneResult,
               events: ZoneEventLogger) -> None:
        """Attempt the runtime and the permanent change for every source, independently."""
        change = self.firewall.add_source if operation == 'add' else self.firewall.remove_source
        verb = 'Adding' if operation == 'add' else 'Removing'

        for source in sources:
            events.record(logging.INFO, f"{verb} source", source=source)
            for layer in Layer:
                succeeded = change(zone, source, permanent=layer is Layer.PERMANENT, events=events)
                result.applied.append(ApplyOutcome(source, operation, layer, succeeded))
                if not succeeded:
                    events.record(logging.WARNING, f"{layer.value.capitalize()} {operation} failed", source=source)

    def _finish(self, result: ZoneResult, outcome: ZoneOutcome, events: ZoneEventLogger) -> ZoneResult:
        result.outcome = outcome
        events.record(logging.INFO if outcome is ZoneOutcome.DONE else logging.WARNING,
                      "Sync completed", outcome=outcome.value, state=result.state.value)
        return result


class ZoneSync:
    """Reconcile every configured zone, one at a time."""

    def __init__(self, firewall: FirewallController, resolver: NameResolver, dry_run: bool = False,
                 events: Optional[ZoneEventLogger] = None):
        self.dry_run = dry_run
        self.events = events or get_event_logger()
        self.reconciler = ZoneReconciler(firewall, resolver, dry_run=dry_run, events=self.events)

    def run(self, zones: Mapping[str, Sequence[str]]) -> RunSummary:
        """
        Reconcile each zone in order.

        A zone that is aborted, fails or raises does not stop the zones
        after it. ToolingUnavailable ends the run.
        """
        if self.dry_run:
            self.events.record(logging.INFO, "=== DRY RUN MODE - No changes will be made ===")

        summary = RunSummary()
        for zone, tokens in zones.items():
            try:
                result = self.reconciler.reconcile(zone, list(tokens))
            except ToolingUnavailable:
                raise
            except Exception as e:
                zone_events = self.events.for_zone(zone)
                zone_events.record(logging.ERROR, "Unexpected error during zone sync", error=str(e))
                result = ZoneResult(zone=zone, outcome=ZoneOutcome.ABORTED)
                zone_events.record(logging.WARNING, "Sync completed", outcome=result.outcome.value,
                                   state=result.state.value)
            summary.results.append(result)

        self.events.record(
            logging.INFO, "All zones processed",
            zones_count=len(summary.results),
            done=summary.zones_with(ZoneOutcome.DONE),
            failed=summary.zones_with(ZoneOutcome.FAILED),
            aborted=summary.zones_with(ZoneOutcome.ABORTED),
        )
        return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Sync firewalld zone sources with the DNS addresses of hostnames',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s public app.example.com https://api.example.com/v1
  %(prog)s --dry-run public --hosts-file /etc/fw-zone-sync/public.txt
  %(prog)s -f /etc/fw-zone-sync.conf

Config file format:
  [zone1]
  host1.example.com
  https://host2.example.com:8443/path   # comment
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be done without making changes'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging on the console'
    )
    parser.add_argument(
        '-f', '--config',
        type=str,
        help='Zone config file with [zone] sections of hosts'
    )
    parser.add_argument(
        '--hosts-file',
        type=str,
        help='File with one host or URL per line for ZONE'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help=f'JSON lines event log (default: {ZoneSyncConfig.LOG_FILE})'
    )
    parser.add_argument('zone', nargs='?', help='Zone to sync')
    parser.add_argument('hosts', nargs='*', help='Hostnames or URLs for ZONE')
    return parser


def _load_zones(args: argparse.Namespace, events: ZoneEventLogger) -> Dict[str, List[str]]:
    if args.config:
        zones = load_zone_config(args.config, events)
        events.record(logging.INFO, "Loaded zone config", file=args.config, zones_count=len(zones))
        return zones

    hosts = list(args.hosts)
    if args.hosts_file:
        hosts.extend(load_host_list(args.hosts_file))
    return {args.zone: hosts}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    if args.config and (args.zone or args.hosts_file):
        parser.error('ZONE, HOST and --hosts-file cannot be combined with --config')
    if not args.config and not args.zone:
        parser.error('a ZONE with at least one HOST, or --config, is required')
    if not args.config and not args.hosts and not args.hosts_file:
        parser.error('at least one HOST or --hosts-file is required for ZONE')

    config = ZoneSyncConfig()
    log_file = args.log_file or config.log_file
    try:
        events = setup_event_log(log_file, verbose=args.verbose)
    except OSError as e:
        print(f"ERROR: cannot write to {log_file}: {e}", file=sys.stderr)
        return 1

    try:
        zones = _load_zones(args, events)
    except ConfigError as e:
        events.record(logging.ERROR, str(e), file=args.config or args.hosts_file)
        return 2

    if not args.config and not zones[args.zone]:
        events.record(logging.ERROR, "No hosts given for zone", file=args.hosts_file)
        return 2

    try:
        resolver = NameResolver.from_config(
            doh_url=config.doh_url,
            nameservers=config.nameservers,
            dns_timeout=config.DNS_TIMEOUT,
            doh_timeout=config.DOH_TIMEOUT,
            getent_binary=config.GETENT_CMD,
            user_agent=config.USER_AGENT,
        )
    except ToolingUnavailable as e:
        events.record(logging.ERROR, "Missing DNS resolution tooling", error=str(e))
        return 1

    firewall = FirewallCmd(config.firewall_cmd, config.FIREWALL_TIMEOUT, events=events)
    try:
        ZoneSync(firewall, resolver, dry_run=args.dry_run, events=events).run(zones)
        return 0
    except ToolingUnavailable as e:
        events.record(logging.ERROR, "Missing DNS resolution tooling", error=str(e))
        return 1
    except KeyboardInterrupt:
        events.record(logging.INFO, "Interrupted by user")
        return 130
    finally:
        resolver.close()


if __name__ == "__main__":
    sys.exit(main())
