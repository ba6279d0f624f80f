"""Shared fixtures: an in-memory stand-in for ipset/iptables state."""

import pytest
from unittest.mock import Mock

from bouncer.core.context import create_context
from bouncer.core.executor import CommandResult
from bouncer.services.ipset import IPFamily, ProtocolContext


IPSET_BIN = "/usr/sbin/ipset"
IPTABLES_BIN = "/usr/sbin/iptables"
IP6TABLES_BIN = "/usr/sbin/ip6tables"

SET_MISSING = "ipset v7.15: The set with the given name does not exist"
RULE_MISSING = "iptables: Bad rule (does a matching rule exist in that chain?)."


class FakeFirewall:
    """Mimics kernel set/rule state behind CommandExecutor.run."""

    def __init__(self) -> None:
        self.sets: dict[str, set[str]] = {}
        self.rules: dict[tuple[str, str], list[tuple[str, ...]]] = {}
        self.calls: list[list[str]] = []
        self.failures: dict[tuple[str, ...], CommandResult] = {}

    def run(self, command, *, description=None, check=True, timeout=None):
        command = list(command)
        self.calls.append(command)
        for prefix, result in self.failures.items():
            if tuple(command[:len(prefix)]) == prefix:
                return result
        if command[0] == IPSET_BIN:
            return self._ipset(command)
        return self._iptables(command)

    def fail(self, *prefix: str, return_code: int = 2, stderr: str = "boom") -> None:
        """Make every command starting with prefix fail."""
        self.failures[prefix] = CommandResult(list(prefix), return_code, "", stderr)

    def calls_to(self, binary: str, verb: str) -> list[list[str]]:
        """Recorded calls to binary whose args contain verb."""
        return [c for c in self.calls if c[0] == binary and verb in c[1:]]

    def rule_count(self, binary: str, chain: str) -> int:
        return len(self.rules.get((binary, chain), []))

    @staticmethod
    def _result(command, code=0, stderr=""):
        return CommandResult(command, code, "", stderr)

    def _ipset(self, command):
        args = [a for a in command[1:] if a != "-exist"]
        verb, name = args[0], args[1]
        if verb == "list":
            return self._result(command, 0 if name in self.sets else 1,
                                "" if name in self.sets else SET_MISSING)
        if verb == "create":
            self.sets.setdefault(name, set())
            return self._result(command)
        if name not in self.sets:
            return self._result(command, 1, SET_MISSING)
        if verb == "add":
            self.sets[name].add(args[2])
        elif verb == "del":
            self.sets[name].discard(args[2])
        return self._result(command)

    def _iptables(self, command):
        args = command[1:]
        if args[0] == "-w":
            args = args[1:]
        verb, chain, rule = args[0], args[1], tuple(args[2:])
        set_name = rule[rule.index("--match-set") + 1]
        if set_name not in self.sets:
            return self._result(command, 2, f"iptables v1.8.9: Set {set_name} doesn't exist.")

        chain_rules = self.rules.setdefault((command[0], chain), [])
        if verb == "-C":
            return self._result(command, 0 if rule in chain_rules else 1,
                                "" if rule in chain_rules else RULE_MISSING)
        if verb == "-I":
            chain_rules.insert(0, rule)
            return self._result(command)
        if verb == "-D":
            if rule not in chain_rules:
                return self._result(command, 1, RULE_MISSING)
            chain_rules.remove(rule)
            return self._result(command)
        raise AssertionError(f"unexpected iptables verb {verb}")


@pytest.fixture
def ctx():
    """Quiet execution context."""
    return create_context(quiet=True)


@pytest.fixture
def dry_ctx():
    """Quiet dry-run execution context."""
    return create_context(dry_run=True, quiet=True)


@pytest.fixture
def firewall():
    """Fresh fake kernel state."""
    return FakeFirewall()


@pytest.fixture
def executor(firewall):
    """Executor mock backed by the fake firewall."""
    mock = Mock()
    mock.run.side_effect = firewall.run
    return mock


def make_context(ctx, executor, family=IPFamily.V4, chains=("INPUT",), set_name=None):
    """Build a ProtocolContext wired to the fake binaries."""
    if set_name is None:
        set_name = "crowdsec-blacklists" if family is IPFamily.V4 else "crowdsec6-blacklists"
    return ProtocolContext(
        ctx,
        executor,
        family=family,
        set_name=set_name,
        chains=chains,
        ipset_bin=IPSET_BIN,
        iptables_bin=IPTABLES_BIN if family is IPFamily.V4 else IP6TABLES_BIN,
    )


@pytest.fixture
def context_factory(ctx, executor):
    """Factory for ProtocolContexts sharing ctx and executor."""
    def _factory(family=IPFamily.V4, chains=("INPUT",), set_name=None, context=None):
        return make_context(context or ctx, executor, family, chains, set_name)
    return _factory
