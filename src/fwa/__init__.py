"""
Firewall Automation - role-based firewall policy deployment.

Translates one declarative policy into firewalld, ufw or iptables
commands and deploys it across a fleet of hosts over SSH.
"""

__version__ = "1.0.0"
__author__ = "Firewall Automation Team"
