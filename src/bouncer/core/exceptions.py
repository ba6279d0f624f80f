"""Custom exceptions for the firewall bouncer.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class BouncerError(Exception):
    """Base exception for all bouncer errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BouncerError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ExecutionError(BouncerError):
    """Command execution failures.

    Raised when:
    - Command times out
    - Binary cannot be executed
    - Command returns non-zero exit code (check=True)
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(BouncerError):
    """Missing prerequisites.

    Raised when:
    - ipset, iptables or ip6tables binary not found
    """
    exit_code = 6


class FirewallError(BouncerError):
    """Firewall/ipset errors.

    Raised when:
    - Set creation or rule insertion fails during bring-up
    - Rule removal fails during shutdown
    - Adding or removing a set member fails
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        family: Optional[str] = None,
        set_name: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.family = family
        self.set_name = set_name
        self.chain = chain


class DecisionError(BouncerError):
    """Malformed decision input.

    Raised when:
    - Decision payload is missing required fields
    - Duration string cannot be parsed
    """
    exit_code = 20


class UnrecognizedAddressError(DecisionError):
    """Decision value does not look like an IPv4 or IPv6 address."""
    exit_code = 21

    def __init__(
        self,
        message: str,
        *,
        value: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.value = value
