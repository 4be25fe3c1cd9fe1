"""Import records from an external database into a WordPress site."""

__version__ = "0.1.0"
