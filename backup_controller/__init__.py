"""
ArangoBackup controller.

Reconciles ArangoBackup custom resources against ArangoDB deployments.
"""

__version__ = "0.1.0"
