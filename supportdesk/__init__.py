"""Client-side ticket panel state for the support desk."""

__version__ = "0.1.0"
