"""Per-invocation state shared by the CLI, the executor and the firewall services."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from bouncer.core.config import AppConfig, AuditConfig, FirewallConfig
from bouncer.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags for one bouncer run plus its lazily loaded configuration.

    ``dry_run`` is honoured by the executor, which never spawns a process,
    and by ProtocolContext, which then treats every set and rule as absent.
    The other flags only shape console output.
    """

    dry_run: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Optional[Path] = None

    _app_config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Config file merged with BOUNCER_* overrides, read on first use."""
        if self._app_config is None:
            self._app_config = AppConfig(config_path=self.config_path)
        return self._app_config

    @property
    def firewall(self) -> FirewallConfig:
        return self.config.firewall

    @property
    def audit(self) -> AuditConfig:
        return self.config.audit

    @property
    def console(self) -> Console:
        return self._console

    @property
    def needs_root(self) -> bool:
        """Whether this run will touch ipset or iptables."""
        return not self.dry_run


def _verbosity(verbose: int, quiet: bool) -> Verbosity:
    if quiet:
        return Verbosity.QUIET
    return Verbosity(min(Verbosity.NORMAL + verbose, Verbosity.DEBUG))


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Build the context for a CLI invocation.

    ``--quiet`` wins over any number of ``-v`` flags; ``-vv`` and beyond
    print every ipset/iptables command line.
    """
    return ExecutionContext(
        dry_run=dry_run,
        verbosity=_verbosity(verbose, quiet),
        no_color=no_color,
        config_path=config,
    )
