"""ProGeoData lead-generation pipeline."""

__version__ = "0.4.0"
