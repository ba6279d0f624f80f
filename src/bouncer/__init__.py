"""
Firewall bouncer - enforce IP ban decisions with ipset and iptables.

Maintains one ipset deny set per IP family and keeps a DROP rule
referencing it in each configured iptables/ip6tables chain.
"""

__version__ = "1.0.0"
