"""Expose commonly used billing services."""

from .donors import DonorNotFound, find_donor, find_donor_id
from .tax import TaxBreakdown, calculate_tax
