"""Dual-stack iptables/ipset backend.

Owns one ProtocolContext per IP family (IPv6 optional) and routes
ban/unban decisions to the matching family.
"""

from typing import Optional

from bouncer.core.config import FirewallConfig
from bouncer.core.context import ExecutionContext
from bouncer.core.exceptions import FirewallError, UnrecognizedAddressError
from bouncer.core.executor import CommandExecutor, resolve_binary
from bouncer.services.decision import Decision
from bouncer.services.ipset import IPFamily, ProtocolContext


def classify_address(value: str) -> Optional[IPFamily]:
    """Guess the IP family of an address string.

    A colon means IPv6, otherwise a dot means IPv4. IPv4-mapped IPv6
    addresses such as ``::ffff:192.0.2.1`` therefore route to IPv6.
    The address itself is not validated.

    Returns:
        The family, or None if neither signal is present
    """
    if ":" in value:
        return IPFamily.V6
    if "." in value:
        return IPFamily.V4
    return None


class DualStackBackend:
    """iptables + ipset enforcement for IPv4 and optional IPv6.

    Lifecycle: ``init()`` once before decisions, ``add()``/``delete()`` per
    decision, ``shut_down()`` at exit. Concurrent ``add``/``delete`` calls
    are fine; ``init``/``shut_down`` must not race with them.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        v4: ProtocolContext,
        v6: Optional[ProtocolContext] = None,
    ) -> None:
        self.ctx = ctx
        self.v4 = v4
        self.v6 = v6

    @property
    def contexts(self) -> list[ProtocolContext]:
        """Present contexts, IPv4 first."""
        return [c for c in (self.v4, self.v6) if c is not None]

    def init(self) -> None:
        """Flush stale rules, then create sets and rules for each family.

        Fails fast on the first error without rolling back earlier steps;
        calling it again resumes from whatever state was left.

        Raises:
            FirewallError: If any shutdown or bring-up step fails
        """
        for context in self.contexts:
            self.ctx.console.info(f"iptables for {context.family.label} initiated")
            try:
                context.shut_down()
            except FirewallError as e:
                raise _wrap(e, f"iptables shutdown failed: {e.message}") from e

            try:
                context.check_and_create()
            except FirewallError as e:
                raise _wrap(e, f"iptables init failed: {e.message}") from e

    def shut_down(self) -> None:
        """Detach the sets from every chain, IPv4 first.

        Stops at the first failing family.

        Raises:
            FirewallError: If removing a rule fails
        """
        for context in self.contexts:
            try:
                context.shut_down()
            except FirewallError as e:
                raise _wrap(
                    e, f"iptables for {context.family.label} shutdown failed: {e.message}"
                ) from e

    def add(self, decision: Decision) -> None:
        """Ban the decision's address.

        Simulation decisions and IPv6 addresses with IPv6 disabled are
        skipped without error.

        Raises:
            UnrecognizedAddressError: If the address matches no family
            FirewallError: If the set mutation fails
        """
        if decision.is_simulation:
            self.ctx.console.debug(
                f"measure against '{decision.value}' is in simulation mode, skipping it"
            )
            return

        context = self._route(decision, "adding")
        if context is None:
            return

        try:
            context.add(decision)
        except FirewallError as e:
            raise _wrap(
                e,
                f"failed inserting ban ip '{decision.value}' for iptables {context.family.label} rule",
            ) from e

    def delete(self, decision: Decision) -> None:
        """Unban the decision's address.

        Applied regardless of the decision type, including simulation
        decisions. Deleting an address not in the set succeeds.

        Raises:
            UnrecognizedAddressError: If the address matches no family
            FirewallError: If the set mutation fails
        """
        context = self._route(decision, "deleting")
        if context is None:
            return

        try:
            context.delete(decision)
        except FirewallError as e:
            raise _wrap(
                e,
                f"failed deleting ban ip '{decision.value}' for iptables {context.family.label} rule",
            ) from e

    def _route(self, decision: Decision, action: str) -> Optional[ProtocolContext]:
        family = classify_address(decision.value)
        if family is None:
            raise UnrecognizedAddressError(
                f"failed {action} ban: ip '{decision.value}' was not recognised",
                value=decision.value,
                hint="Decision values must be IPv4 or IPv6 addresses or ranges",
            )

        if family is IPFamily.V4:
            return self.v4

        if self.v6 is None:
            self.ctx.console.debug(f"not {action} '{decision.value}' because ipv6 is disabled")
        return self.v6


def _wrap(error: FirewallError, message: str) -> FirewallError:
    return FirewallError(
        message,
        family=error.family,
        set_name=error.set_name,
        chain=error.chain,
        hint=error.hint,
        details=error.details,
    )


def create_backend(
    ctx: ExecutionContext,
    config: FirewallConfig,
    executor: Optional[CommandExecutor] = None,
) -> DualStackBackend:
    """Build the backend, resolving binaries once.

    ip6tables is only looked up when IPv6 is enabled.

    Raises:
        PrerequisiteError: If ipset, iptables or (when enabled) ip6tables
            is not installed
    """
    executor = executor or CommandExecutor(ctx, timeout=config.command_timeout)

    ipset_bin = resolve_binary("ipset")
    v4 = ProtocolContext(
        ctx,
        executor,
        family=IPFamily.V4,
        set_name=config.ipv4_set_name,
        chains=config.iptables_chains,
        ipset_bin=ipset_bin,
        iptables_bin=resolve_binary(IPFamily.V4.rule_binary),
        set_type=config.set_type,
    )

    v6 = None
    if not config.disable_ipv6:
        v6 = ProtocolContext(
            ctx,
            executor,
            family=IPFamily.V6,
            set_name=config.ipv6_set_name,
            chains=config.iptables_chains,
            ipset_bin=ipset_bin,
            iptables_bin=resolve_binary(IPFamily.V6.rule_binary),
            set_type=config.set_type,
        )

    return DualStackBackend(ctx, v4, v6)
