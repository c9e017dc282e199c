"""
Nextcloud Provisioning - Create Nextcloud user accounts in bulk from a CSV file.

This package reconciles a CSV of desired users against the accounts that already
exist on a Nextcloud server and creates only the missing ones.
"""

__version__ = "1.0.0"
__author__ = "Nextcloud Provisioning Team"
