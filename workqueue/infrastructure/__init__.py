"""
Queue storage backends.
"""

from .storage import create_storage

__all__ = ["create_storage"]
