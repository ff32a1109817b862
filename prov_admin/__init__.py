"""
Provisioning admin CLI.
"""
