"""
NutriFlow - Database access.
"""

from nutriflow.db.client import get_client

__all__ = ["get_client"]
