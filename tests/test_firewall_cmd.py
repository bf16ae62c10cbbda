import subprocess

import pytest

import zone_sync
from fakes import FakeBackend
from zone_sources import NameResolver
from zone_sync import FirewallCmd, FirewallError, ZoneOutcome, ZoneReconciler


def completed(command, returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


class FakeRun:
    """Stands in for subprocess.run; responses map an argument prefix to (rc, stdout, stderr) or an exception."""

    def __init__(self):
        self.calls = []
        self.responses = {}

    def __call__(self, command, **kwargs):
        self.calls.append(command)
        for arg in command[1:]:
            for prefix, response in self.responses.items():
                if arg.startswith(prefix):
                    if isinstance(response, BaseException):
                        raise response
                    return completed(command, *response)
        return completed(command)


@pytest.fixture
def commands(monkeypatch):
    fake_run = FakeRun()
    monkeypatch.setattr(zone_sync.subprocess, 'run', fake_run)
    return fake_run


@pytest.mark.parametrize('action, permanent, expected', [
    ('add', False, ['--zone=public', '--add-source=192.0.2.1/32']),
    ('add', True, ['--permanent', '--zone=public', '--add-source=192.0.2.1/32']),
    ('remove', False, ['--zone=public', '--remove-source=192.0.2.1/32']),
    ('remove', True, ['--permanent', '--zone=public', '--remove-source=192.0.2.1/32']),
])
def test_source_args(action, permanent, expected):
    assert FirewallCmd._source_args('public', action, '192.0.2.1/32', permanent) == expected


def test_get_zones_splits_whitespace(commands, events):
    commands.responses['--get-zones'] = (0, 'block dmz\n  public\ttrusted\n')

    assert FirewallCmd('firewall-cmd', events=events).get_zones() == ['block', 'dmz', 'public', 'trusted']
    assert commands.calls == [['firewall-cmd', '--get-zones']]


def test_list_sources_splits_whitespace(commands, events):
    commands.responses['--list-sources'] = (0, '10.0.0.0/24 192.0.2.1/32  ipset:office\n')
    firewall = FirewallCmd('firewall-cmd', events=events)

    assert firewall.list_sources('public') == ['10.0.0.0/24', '192.0.2.1/32', 'ipset:office']
    assert commands.calls == [['firewall-cmd', '--zone=public', '--list-sources']]

    commands.responses['--list-sources'] = (0, '\n')
    assert firewall.list_sources('public') == []


@pytest.mark.parametrize('response', [
    (252, '', 'FirewallD is not running'),
    FileNotFoundError('firewall-cmd'),
    subprocess.TimeoutExpired(['firewall-cmd', '--get-zones'], 30),
])
def test_query_failures_raise(commands, events, response):
    commands.responses['--get-zones'] = response

    with pytest.raises(FirewallError):
        FirewallCmd('firewall-cmd', events=events).get_zones()


def test_query_error_includes_stderr(commands, events):
    commands.responses['--list-sources'] = (112, '', 'INVALID_ZONE: ghost')

    with pytest.raises(FirewallError, match='exited with 112: INVALID_ZONE: ghost'):
        FirewallCmd('firewall-cmd', events=events).list_sources('ghost')


def test_change_succeeds(commands, events):
    firewall = FirewallCmd('firewall-cmd', events=events)

    assert firewall.add_source('public', '192.0.2.1/32', permanent=True)
    assert firewall.reload()
    assert commands.calls == [
        ['firewall-cmd', '--permanent', '--zone=public', '--add-source=192.0.2.1/32'],
        ['firewall-cmd', '--reload'],
    ]


@pytest.mark.parametrize('response', [
    (13, '', 'INVALID_ADDR: 192.0.2.1/33'),
    subprocess.TimeoutExpired(['firewall-cmd'], 30),
    PermissionError('firewall-cmd'),
])
def test_change_failures_return_false(commands, events, response):
    commands.responses['--remove-source'] = response
    commands.responses['--reload'] = response
    firewall = FirewallCmd('firewall-cmd', events=events)

    assert firewall.remove_source('public', '192.0.2.1/32') is False
    assert firewall.reload() is False


def test_command_failures_are_logged_for_the_reconciled_zone(commands, events, read_events):
    commands.responses['--get-zones'] = (0, 'public\n')
    commands.responses['--list-sources'] = (0, '')
    commands.responses['--add-source'] = (13, '', 'INVALID_ADDR')
    resolver = NameResolver(FakeBackend({'vpn.example.com': {'A': ['198.51.100.5']}}))
    reconciler = ZoneReconciler(FirewallCmd('firewall-cmd', events=events), resolver, events=events)

    result = reconciler.reconcile('public', ['vpn.example.com'])

    assert result.outcome is ZoneOutcome.FAILED
    failed = [e for e in read_events() if e['message'] == 'Firewall command failed']
    assert len(failed) == 2
    assert {e['zone'] for e in failed} == {'public'}
    assert {e['error'] for e in failed} == {'INVALID_ADDR'}
    assert {e['returncode'] for e in failed} == {13}
    running = [e for e in read_events() if e['message'] == 'Running firewall command']
    assert {e['zone'] for e in running} == {'public'}
    assert not any(c[-1] == '--reload' for c in commands.calls)
