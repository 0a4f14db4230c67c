# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the traffic redirector against a fake iptables."""

import pytest

from enclave_bridge.commands import CommandResult
from enclave_bridge.errors import RedirectError
from enclave_bridge.guest.redirect import (
    CHAIN,
    LOOPBACK_EXEMPTIONS,
    RedirectRule,
    Redirector,
    configure_loopback,
    rules_for,
)
from enclave_bridge.mappings import DEFAULT_MAPPINGS


class FakeIptables:
    """Just enough of ``iptables -t nat`` to check rule state."""

    def __init__(self, fail_on=None):
        self.chains = {"OUTPUT": [], "PREROUTING": []}
        self.calls = []
        self.fail_on = fail_on

    def __call__(self, args):
        args = list(args)
        self.calls.append(args)
        assert args[:3] == ["iptables", "-t", "nat"]
        op, rest = args[3], args[4:]
        if self.fail_on == op:
            return CommandResult(args, 4, "", "iptables: Permission denied")

        def ok(stdout=""):
            return CommandResult(args, 0, stdout, "")

        def missing():
            return CommandResult(args, 1, "", "iptables: No chain/target/match by that name.")

        if op == "-n":  # -n -L CHAIN
            return ok() if rest[1] in self.chains else missing()
        chain, spec = rest[0], rest[1:]
        if op == "-N":
            if chain in self.chains:
                return CommandResult(args, 1, "", "iptables: Chain already exists.")
            self.chains[chain] = []
            return ok()
        if chain not in self.chains:
            return missing()
        rules = self.chains[chain]
        if op == "-F":
            rules.clear()
        elif op == "-X":
            del self.chains[chain]
        elif op == "-A":
            rules.append(tuple(spec))
        elif op == "-I":
            rules.insert(int(spec[0]) - 1, tuple(spec[1:]))
        elif op == "-C":
            return ok() if tuple(spec) in rules else missing()
        elif op == "-D":
            if tuple(spec) not in rules:
                return missing()
            rules.remove(tuple(spec))
        elif op == "-S":
            return ok("\n".join([f"-N {chain}"] + [f"-A {chain} " + " ".join(r) for r in rules]))
        return ok()


@pytest.fixture
def iptables():
    return FakeIptables()


class TestRules:
    """Deriving redirect rules from the mapping table."""

    def test_rules_for_default_table(self):
        ports = [r.dest_port for r in rules_for(DEFAULT_MAPPINGS)]
        assert ports == [80, 443, 8080, 8443, 9000]  # api is inbound, no redirect

    def test_rule_args(self):
        assert RedirectRule(443).args() == (
            "-p", "tcp", "--dport", "443", "-j", "REDIRECT", "--to-ports", "443",
        )
        assert RedirectRule(443, to_port=8443).args()[-1] == "8443"


class TestRedirector:
    """Installing and removing the NAT chain."""

    def test_install(self, iptables):
        Redirector(iptables).install(rules_for(DEFAULT_MAPPINGS))

        chain = iptables.chains[CHAIN]
        # Loopback exemptions come before any redirect
        assert chain[:2] == list(LOOPBACK_EXEMPTIONS)
        assert len(chain) == 2 + 5
        assert all("REDIRECT" in rule for rule in chain[2:])
        assert iptables.chains["OUTPUT"] == [("-p", "tcp", "-j", CHAIN)]

    def test_install_twice_is_identical(self, iptables):
        redirector = Redirector(iptables)
        redirector.install(rules_for(DEFAULT_MAPPINGS))
        first = {name: list(rules) for name, rules in iptables.chains.items()}
        redirector.install(rules_for(DEFAULT_MAPPINGS))
        assert iptables.chains == first
        assert iptables.chains["OUTPUT"].count(("-p", "tcp", "-j", CHAIN)) == 1

    def test_install_replaces_previous_rules(self, iptables):
        redirector = Redirector(iptables)
        redirector.install([RedirectRule(80), RedirectRule(443)])
        redirector.install([RedirectRule(443)])
        redirects = [r for r in iptables.chains[CHAIN] if "REDIRECT" in r]
        assert redirects == [RedirectRule(443).args()]

    def test_rule_without_exemption_goes_first(self, iptables):
        Redirector(iptables).install([RedirectRule(53, exempt_loopback=False), RedirectRule(443)])
        chain = iptables.chains[CHAIN]
        assert chain[0] == RedirectRule(53).args()
        assert chain[1:3] == list(LOOPBACK_EXEMPTIONS)

    def test_failure_raises(self):
        with pytest.raises(RedirectError, match="Permission denied"):
            Redirector(FakeIptables(fail_on="-A")).install([RedirectRule(443)])

    def test_remove(self, iptables):
        redirector = Redirector(iptables)
        redirector.install([RedirectRule(443)])
        assert redirector.current_rules()[0] == f"-N {CHAIN}"
        redirector.remove()
        assert CHAIN not in iptables.chains
        assert iptables.chains["OUTPUT"] == []
        assert redirector.current_rules() == []
        redirector.remove()  # nothing left to remove


class TestLoopback:
    """Loopback configuration for a fresh enclave."""

    def _runner(self, addr_rc=0, addr_err="", link_rc=0):
        calls = []

        def run(args):
            calls.append(list(args))
            if args[1] == "addr":
                return CommandResult(list(args), addr_rc, "", addr_err)
            return CommandResult(list(args), link_rc, "", "")

        run.calls = calls
        return run

    def test_configures_lo_and_hosts(self, tmp_path):
        hosts = tmp_path / "hosts"
        runner = self._runner()
        configure_loopback(runner, hosts_path=hosts)
        assert runner.calls == [
            ["ip", "addr", "add", "127.0.0.1/8", "dev", "lo"],
            ["ip", "link", "set", "dev", "lo", "up"],
        ]
        assert "127.0.0.1" in hosts.read_text()

    def test_existing_address_tolerated(self, tmp_path):
        hosts = tmp_path / "hosts"
        hosts.write_text("127.0.0.1 localhost\n")
        configure_loopback(
            self._runner(addr_rc=2, addr_err="RTNETLINK answers: File exists"), hosts_path=hosts
        )
        assert hosts.read_text() == "127.0.0.1 localhost\n"

    def test_link_failure_raises(self, tmp_path):
        with pytest.raises(RedirectError):
            configure_loopback(self._runner(link_rc=1), hosts_path=tmp_path / "hosts")

    def test_addr_failure_raises(self, tmp_path):
        with pytest.raises(RedirectError):
            configure_loopback(
                self._runner(addr_rc=2, addr_err="Operation not permitted"), hosts_path=tmp_path / "hosts"
            )
