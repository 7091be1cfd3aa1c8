"""
Capability providers for third-party systems.

Contains:
- permissions: enforcement grade matrix
- insurance: impound discounts and claims
"""

from parksim.integrations.insurance import (
    InMemoryInsurance,
    InsuranceProvider,
    NullInsurance,
    calculate_impound_discount,
)
from parksim.integrations.permissions import PermissionPolicy, grade_name

__all__ = [
    "InMemoryInsurance",
    "InsuranceProvider",
    "NullInsurance",
    "calculate_impound_discount",
    "PermissionPolicy",
    "grade_name",
]
