"""Core framework components for the firewall bouncer."""

from bouncer.core.exceptions import (
    BouncerError,
    ConfigurationError,
    ExecutionError,
    PrerequisiteError,
    FirewallError,
    DecisionError,
    UnrecognizedAddressError,
)

from bouncer.core.context import ExecutionContext, create_context
from bouncer.core.output import console, Console, Verbosity
from bouncer.core.config import AppConfig, BouncerConfig, FirewallConfig
from bouncer.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
    configure_audit_logger,
    get_audit_logger,
)
from bouncer.core.executor import CommandExecutor, CommandResult, resolve_binary

__all__ = [
    # Exceptions
    "BouncerError",
    "ConfigurationError",
    "ExecutionError",
    "PrerequisiteError",
    "FirewallError",
    "DecisionError",
    "UnrecognizedAddressError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "BouncerConfig",
    "FirewallConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "configure_audit_logger",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
    "resolve_binary",
]
