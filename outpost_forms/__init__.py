"""Local forms daemon between Outpost and PackItForms."""

__version__ = "3.0.0"
