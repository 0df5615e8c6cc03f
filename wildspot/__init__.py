"""Content-addressed wildlife photo store and sighting query toolkit."""

__version__ = "1.0.0"
