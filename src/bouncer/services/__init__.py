"""Firewall services: decisions, per-family ipset contexts and the dual-stack backend."""

from bouncer.services.backend import DualStackBackend, classify_address, create_backend
from bouncer.services.decision import Decision, DecisionBatch, load_decision_stream, parse_duration
from bouncer.services.ipset import IPFamily, ProtocolContext, RuleCommands, build_rule_commands

__all__ = [
    "DualStackBackend",
    "classify_address",
    "create_backend",
    "Decision",
    "DecisionBatch",
    "load_decision_stream",
    "parse_duration",
    "IPFamily",
    "ProtocolContext",
    "RuleCommands",
    "build_rule_commands",
]
