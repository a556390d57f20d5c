"""
Lab (tenant) records as seen by the subscription lifecycle.
"""

from .models import Lab, LabStatus
from . import crud

__all__ = [
    "Lab",
    "LabStatus",
    "crud",
]
