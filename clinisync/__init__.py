"""ClinicSync: legacy clinic data sync, caching and eligibility engine."""

__version__ = "1.0.0"
