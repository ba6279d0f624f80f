"""Main CLI entry point using Typer.

This module defines the root CLI application: backend lifecycle
commands, single-decision commands, decision-stream application and
configuration helpers.
"""

import os
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from bouncer import __version__
from bouncer.core.audit import (
    AuditEventType,
    AuditLogger,
    configure_audit_logger,
)
from bouncer.core.config import (
    DEFAULT_CONFIG_PATH,
    get_example_config,
    init_config,
)
from bouncer.core.context import ExecutionContext, create_context
from bouncer.core.exceptions import (
    BouncerError,
    DecisionError,
    FirewallError,
    UnrecognizedAddressError,
)
from bouncer.core.output import console as app_console
from bouncer.services.backend import DualStackBackend, classify_address, create_backend
from bouncer.services.decision import Decision, load_decision_stream


app = typer.Typer(
    name="bouncer",
    help="Firewall bouncer - enforce IP bans with ipset and iptables.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite existing files.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: $BOUNCER_CONFIG or {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

DecisionTypeOption = Annotated[
    str,
    typer.Option(
        "--type",
        "-t",
        help="Decision type. Prefix with 'simulation:' for a dry-run measure.",
    ),
]

DurationOption = Annotated[
    Optional[str],
    typer.Option(
        "--duration",
        "-d",
        help="Ban duration, e.g. 4h or 90m. Default: permanent.",
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"bouncer version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Firewall bouncer - enforce IP bans with ipset and iptables.

    Keeps one ipset deny set per IP family and a DROP rule referencing it
    in each configured chain.

    [bold]Examples:[/bold]
        bouncer init
        bouncer ban 203.0.113.5 --duration 4h
        bouncer unban 2001:db8::1
        bouncer apply decisions.json
        bouncer shutdown
    """
    pass


def handle_error(error: BouncerError) -> None:
    """Handle a BouncerError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _check_root(ctx: ExecutionContext) -> None:
    """Check for root privileges."""
    if ctx.needs_root and os.geteuid() != 0:
        ctx.console.error("This operation requires root privileges")
        ctx.console.hint("Run with: sudo bouncer ...")
        raise typer.Exit(6)


def _get_backend(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> tuple[ExecutionContext, DualStackBackend, AuditLogger]:
    """Create context, backend and audit logger from CLI options."""
    ctx = create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )
    audit = configure_audit_logger(
        log_path=ctx.audit.log_path,
        enabled=ctx.audit.enabled,
    )
    audit.log_session_start(sys.argv[1] if len(sys.argv) > 1 else "", sys.argv[2:])

    backend = create_backend(ctx, ctx.firewall)
    return ctx, backend, audit


def _run_decision(
    ctx: ExecutionContext,
    backend: DualStackBackend,
    audit: AuditLogger,
    decision: Decision,
    *,
    delete: bool,
) -> None:
    """Apply one decision and record it in the audit log."""
    family = classify_address(decision.value)
    label = family.label if family else None

    try:
        if delete:
            backend.delete(decision)
        else:
            backend.add(decision)
    except BouncerError as e:
        audit.log_decision(decision, delete=delete, family=label, error=e.message)
        raise

    audit.log_decision(decision, delete=delete, family=label, dry_run=ctx.dry_run)


# ============================================================================
# Lifecycle commands
# ============================================================================

@app.command("init")
def init_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Create the deny sets and attach them to the configured chains.

    Removes rules left over from a previous run first, so running it
    again never duplicates rules.
    """
    try:
        ctx, backend, audit = _get_backend(dry_run, verbose, quiet, no_color, config)
        _check_root(ctx)

        set_names = [c.set_name for c in backend.contexts]
        try:
            backend.init()
        except FirewallError as e:
            audit.log_backend(AuditEventType.BACKEND_INIT, set_names, error=e.message)
            raise

        audit.log_backend(AuditEventType.BACKEND_INIT, set_names, dry_run=dry_run)
        sets = ", ".join(set_names)
        ctx.console.success(f"Firewall backend ready ({sets})")

    except BouncerError as e:
        handle_error(e)


@app.command("shutdown")
def shutdown_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Detach the deny sets from every chain.

    The sets and their entries are kept for the next init.
    """
    try:
        ctx, backend, audit = _get_backend(dry_run, verbose, quiet, no_color, config)
        _check_root(ctx)

        set_names = [c.set_name for c in backend.contexts]
        try:
            backend.shut_down()
        except FirewallError as e:
            audit.log_backend(AuditEventType.BACKEND_SHUTDOWN, set_names, error=e.message)
            raise

        audit.log_backend(AuditEventType.BACKEND_SHUTDOWN, set_names, dry_run=dry_run)
        ctx.console.success("Firewall rules removed")

    except BouncerError as e:
        handle_error(e)


@app.command("status")
def status_cmd(
    verbose: VerboseOption = 0,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Show deny sets and whether each chain carries the DROP rule."""
    try:
        ctx, backend, _ = _get_backend(verbose=verbose, no_color=no_color, config=config)
        _check_root(ctx)

        rows = []
        for context in backend.contexts:
            set_state = "present" if context.set_exists() else "[red]missing[/red]"
            for chain, check in zip(context.commands.chains, context.commands.check):
                attached = context.rule_exists(chain, check)
                rows.append([
                    context.family.label,
                    context.set_name,
                    set_state,
                    chain,
                    "[green]yes[/green]" if attached else "[red]no[/red]",
                ])

        ctx.console.table(
            "Firewall Bouncer Status",
            ["Family", "Set", "Set state", "Chain", "Rule attached"],
            rows,
        )
        if backend.v6 is None:
            ctx.console.info("IPv6 support is disabled")

    except BouncerError as e:
        handle_error(e)


# ============================================================================
# Decision commands
# ============================================================================

@app.command("ban")
def ban_cmd(
    address: Annotated[str, typer.Argument(help="IPv4/IPv6 address or range to ban")],
    decision_type: DecisionTypeOption = "ban",
    duration: DurationOption = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Add an address to the deny set of its family.

    [bold]Examples:[/bold]

        bouncer ban 203.0.113.5
        bouncer ban 2001:db8::1 --duration 4h
        bouncer ban 198.51.100.7 --type simulation:ban
    """
    try:
        ctx, backend, audit = _get_backend(dry_run, verbose, quiet, no_color, config)
        _check_root(ctx)

        decision = Decision(type=decision_type, value=address.strip(), duration=duration)
        _run_decision(ctx, backend, audit, decision, delete=False)

        if decision.is_simulation:
            ctx.console.info(f"Simulation decision, {address} not banned")
        else:
            ctx.console.success(f"Banned {address}")

    except BouncerError as e:
        handle_error(e)


@app.command("unban")
def unban_cmd(
    address: Annotated[str, typer.Argument(help="IPv4/IPv6 address or range to unban")],
    decision_type: DecisionTypeOption = "ban",
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Remove an address from the deny set of its family.

    Unbanning an address that is not banned succeeds.
    """
    try:
        ctx, backend, audit = _get_backend(dry_run, verbose, quiet, no_color, config)
        _check_root(ctx)

        decision = Decision(type=decision_type, value=address.strip())
        _run_decision(ctx, backend, audit, decision, delete=True)
        ctx.console.success(f"Unbanned {address}")

    except BouncerError as e:
        handle_error(e)


@app.command("apply")
def apply_cmd(
    decisions_file: Annotated[
        Path,
        typer.Argument(
            help='Decision stream JSON: {"new": [...], "deleted": [...]}',
            exists=True,
            dir_okay=False,
        ),
    ],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Apply a batch of decisions from a decision stream payload.

    Deletions are applied before additions. A failing decision is
    reported and skipped; the rest of the batch still runs.
    """
    try:
        ctx, backend, audit = _get_backend(dry_run, verbose, quiet, no_color, config)
        _check_root(ctx)

        batch = load_decision_stream(decisions_file)
        ctx.console.info(
            f"{len(batch.deleted)} decision(s) to delete, {len(batch.new)} to add, "
            f"{len(batch.invalid)} invalid"
        )

        counts = {"deleted": 0, "added": 0, "simulated": 0, "unrecognized": 0, "failed": 0}
        for error in batch.invalid:
            if isinstance(error, UnrecognizedAddressError):
                counts["unrecognized"] += 1
                ctx.console.warn(error.message)
            else:
                counts["failed"] += 1
                ctx.console.error(error.message)
            for detail in error.details:
                ctx.console.print(f"  [dim]{escape(detail)}[/dim]")

        work = [(d, True) for d in batch.deleted] + [(d, False) for d in batch.new]

        for decision, delete in work:
            try:
                _run_decision(ctx, backend, audit, decision, delete=delete)
            except UnrecognizedAddressError as e:
                counts["unrecognized"] += 1
                ctx.console.warn(e.message)
                continue
            except (FirewallError, DecisionError) as e:
                counts["failed"] += 1
                ctx.console.error(e.message)
                continue

            if delete:
                counts["deleted"] += 1
            elif decision.is_simulation:
                counts["simulated"] += 1
            else:
                counts["added"] += 1

        success = counts["failed"] == 0 and counts["unrecognized"] == 0
        ctx.console.operation_summary(
            "Apply decisions",
            success,
            {key.title(): value for key, value in counts.items()},
        )
        if not success:
            raise typer.Exit(1)

    except BouncerError as e:
        handle_error(e)


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration, including environment overrides."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {app_config.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {app_config.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

    except BouncerError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file with defaults and comments."""
    ctx = create_context(no_color=no_color, config=config)
    config_path = config or DEFAULT_CONFIG_PATH

    try:
        init_config(config_path, force=force)
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to list your chains, then run: bouncer init")

    except BouncerError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file."""
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False)


if __name__ == "__main__":
    app()
