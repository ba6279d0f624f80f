"""Per-family ipset deny set and iptables rule management.

Each ProtocolContext owns one ipset set and the DROP rule that attaches
it to every configured chain:

    iptables -I <chain> -m set --match-set <set> src -j DROP

The set outlives the rule: shutdown only detaches it, so bans stay
recorded and a later bring-up reuses it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from bouncer.core.context import ExecutionContext
from bouncer.core.exceptions import ExecutionError, FirewallError
from bouncer.core.executor import CommandExecutor, CommandResult
from bouncer.services.decision import Decision


# Upper bound on copies of the rule removed from one chain at shutdown
MAX_RULE_COPIES = 64

# iptables -C exits 1 when the rule is not in the chain
RULE_ABSENT_EXIT_CODE = 1
RULE_ABSENT_MARKERS = (
    "does a matching rule exist",
    "Bad rule",
    "doesn't exist",
    "does not exist",
)
SET_ABSENT_MARKERS = (
    "does not exist",
    "doesn't exist",
)
MEMBER_ABSENT_MARKERS = (
    "it's not added",
    "is NOT in set",
)


class IPFamily(str, Enum):
    """IP protocol family."""
    V4 = "v4"
    V6 = "v6"

    @property
    def ipset_family(self) -> str:
        """ipset ``family`` keyword."""
        return "inet" if self is IPFamily.V4 else "inet6"

    @property
    def rule_binary(self) -> str:
        """Rule-manager executable for this family."""
        return "iptables" if self is IPFamily.V4 else "ip6tables"

    @property
    def label(self) -> str:
        return "ipv4" if self is IPFamily.V4 else "ipv6"


@dataclass(frozen=True)
class RuleCommands:
    """Parallel insert/delete/check argument lists, one entry per chain."""
    chains: tuple[str, ...]
    startup: tuple[tuple[str, ...], ...]
    shutdown: tuple[tuple[str, ...], ...]
    check: tuple[tuple[str, ...], ...]


def _rule_args(verb: str, chain: str, set_name: str) -> tuple[str, ...]:
    return (verb, chain, "-m", "set", "--match-set", set_name, "src", "-j", "DROP")


def build_rule_commands(set_name: str, chains: Sequence[str]) -> RuleCommands:
    """Build the rule command templates for a set and its chains."""
    chains = tuple(chains)
    return RuleCommands(
        chains=chains,
        startup=tuple(_rule_args("-I", chain, set_name) for chain in chains),
        shutdown=tuple(_rule_args("-D", chain, set_name) for chain in chains),
        check=tuple(_rule_args("-C", chain, set_name) for chain in chains),
    )


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


class ProtocolContext:
    """Deny set and chain rules for one IP family."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        family: IPFamily,
        set_name: str,
        chains: Sequence[str],
        ipset_bin: str,
        iptables_bin: str,
        set_type: str = "hash:net",
    ) -> None:
        """Initialize a protocol context.

        Args:
            ctx: Execution context
            executor: Command executor
            family: IP family this context manages
            set_name: Name of the ipset deny set
            chains: Chains that get the DROP rule
            ipset_bin: Resolved path of ipset
            iptables_bin: Resolved path of iptables or ip6tables
            set_type: ipset set type used when creating the set
        """
        self.ctx = ctx
        self.executor = executor
        self.family = family
        self.set_name = set_name
        self.ipset_bin = ipset_bin
        self.iptables_bin = iptables_bin
        self.set_type = set_type
        self.commands = build_rule_commands(set_name, chains)

    def __repr__(self) -> str:
        return f"ProtocolContext(family={self.family.value}, set={self.set_name})"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def check_and_create(self) -> None:
        """Ensure the set exists and every chain carries the DROP rule.

        Safe to call repeatedly; rules already present are left alone.

        Raises:
            FirewallError: If a check fails for a reason other than the
                set or rule being absent, or a create/insert fails
        """
        self.ensure_set()

        for chain, check, startup in zip(
            self.commands.chains, self.commands.check, self.commands.startup
        ):
            if self.rule_exists(chain, check):
                self.ctx.console.debug(
                    f"{self.family.rule_binary}: rule for {self.set_name} already in {chain}"
                )
                continue

            self.ctx.console.step(f"Attaching {self.set_name} to {self.family.rule_binary} chain {chain}")
            result = self._run_rule(startup)
            if not result.success:
                raise self._error(f"inserting rule in chain {chain} failed", result, chain=chain)

    def shut_down(self) -> None:
        """Remove the DROP rule from every chain, leaving the set in place.

        Every copy of the rule is removed so duplicates from an unclean
        exit do not survive.

        Raises:
            FirewallError: If a delete fails or a check fails for a reason
                other than the rule being absent
        """
        for chain, check, shutdown in zip(
            self.commands.chains, self.commands.check, self.commands.shutdown
        ):
            if self.ctx.dry_run:
                self._run_rule(shutdown)
                continue

            for _ in range(MAX_RULE_COPIES):
                if not self.rule_exists(chain, check):
                    break
                self.ctx.console.step(f"Detaching {self.set_name} from {self.family.rule_binary} chain {chain}")
                result = self._run_rule(shutdown)
                if not result.success:
                    raise self._error(f"removing rule from chain {chain} failed", result, chain=chain)
            else:
                # the last deletion may have cleared the chain
                if self.rule_exists(chain, check):
                    raise FirewallError(
                        f"{self.family.rule_binary}: rule for {self.set_name} still present in {chain} "
                        f"after {MAX_RULE_COPIES} deletions",
                        family=self.family.value,
                        set_name=self.set_name,
                        chain=chain,
                    )

    # =========================================================================
    # Set membership
    # =========================================================================

    def add(self, decision: Decision) -> None:
        """Add the decision's address to the deny set.

        Decisions whose duration has already run out are skipped: ipset
        reads ``timeout 0`` as "never expires".

        Raises:
            FirewallError: If ipset rejects the entry
            DecisionError: If the duration cannot be parsed
        """
        args = ["-exist", "add", self.set_name, decision.value]
        timeout = decision.timeout
        if timeout is not None:
            if timeout <= 0:
                self.ctx.console.debug(
                    f"ban on {decision.value} expired ({decision.duration}), not adding it"
                )
                return
            args.extend(["timeout", str(timeout)])

        result = self._run_ipset(args)
        if not result.success:
            raise self._error(f"adding {decision.value} failed", result)

    def delete(self, decision: Decision) -> None:
        """Remove the decision's address from the deny set.

        Removing an address that is not in the set succeeds.

        Raises:
            FirewallError: If ipset fails for any other reason
        """
        result = self._run_ipset(["-exist", "del", self.set_name, decision.value])
        if result.success:
            return
        if _contains_any(result.output, MEMBER_ABSENT_MARKERS):
            self.ctx.console.debug(f"{decision.value} not in {self.set_name}, nothing to delete")
            return
        raise self._error(f"deleting {decision.value} failed", result)

    # =========================================================================
    # Existence checks
    # =========================================================================

    def set_exists(self) -> bool:
        """Check whether the deny set exists.

        Raises:
            FirewallError: If ipset fails for a reason other than a missing set
        """
        if self.ctx.dry_run:
            return False

        result = self._run_ipset(["list", self.set_name, "-terse"])
        if result.success:
            return True
        if _contains_any(result.output, SET_ABSENT_MARKERS):
            return False
        raise self._error("listing set failed", result)

    def ensure_set(self) -> None:
        """Create the deny set if it is missing."""
        if self.set_exists():
            self.ctx.console.debug(f"ipset {self.set_name} already exists")
            return

        self.ctx.console.step(f"Creating ipset {self.set_name} ({self.family.ipset_family})")
        result = self._run_ipset([
            "-exist", "create", self.set_name, self.set_type,
            "timeout", "0",
            "family", self.family.ipset_family,
        ])
        if not result.success:
            raise self._error("creating set failed", result)

    def rule_exists(self, chain: str, check: Sequence[str]) -> bool:
        """Run a check command and report whether the rule is present.

        A missing set counts as a missing rule, since no rule can
        reference it.

        Raises:
            FirewallError: On any other check failure
        """
        if self.ctx.dry_run:
            return False

        result = self._run_rule(check)
        if result.success:
            return True
        if result.return_code == RULE_ABSENT_EXIT_CODE or _contains_any(result.output, RULE_ABSENT_MARKERS):
            return False
        raise self._error(f"checking rule in chain {chain} failed", result, chain=chain)

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _run_rule(self, args: Sequence[str]) -> CommandResult:
        # -w waits for the xtables lock instead of failing under contention
        return self._run([self.iptables_bin, "-w", *args])

    def _run_ipset(self, args: Sequence[str]) -> CommandResult:
        return self._run([self.ipset_bin, *args])

    def _run(self, command: list[str]) -> CommandResult:
        try:
            return self.executor.run(command, check=False)
        except ExecutionError as e:
            raise FirewallError(
                f"{self.family.label} command failed: {e.message}",
                family=self.family.value,
                set_name=self.set_name,
                details=e.details,
            ) from e

    def _error(
        self,
        message: str,
        result: CommandResult,
        *,
        chain: Optional[str] = None,
    ) -> FirewallError:
        details = [f"Command: {' '.join(result.command)}", f"Exit code: {result.return_code}"]
        if result.output:
            details.append(f"Output: {result.output}")
        return FirewallError(
            f"{self.family.label} set {self.set_name}: {message}",
            family=self.family.value,
            set_name=self.set_name,
            chain=chain,
            details=details,
        )
