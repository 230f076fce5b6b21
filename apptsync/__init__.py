"""Calendar and conferencing synchronization for appointments."""

__version__ = "0.1.0"
