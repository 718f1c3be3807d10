"""HTTP query API for ClinicSync."""
